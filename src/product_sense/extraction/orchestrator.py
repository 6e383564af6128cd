"""Signal extraction orchestrator.

The concrete SignalExtractor. Local image analysis, the embedding call and
the vision model call do not depend on each other, so they run
concurrently and total latency is bounded by the slowest one.
"""

from __future__ import annotations

import asyncio
import logging

from product_sense.clients.embeddings import EmbeddingClient
from product_sense.errors import ExtractionError
from product_sense.extraction.base import DetectedObject, RecognitionSignals
from product_sense.extraction.image import analyze_image, crop_image
from product_sense.inference.vision import ProductVisionAnalyzer

logger = logging.getLogger(__name__)


class SignalExtractionOrchestrator:
    """Produce RecognitionSignals from image bytes.

    The orchestrator:
    1. Runs Pillow analysis (hash, quality, colors) in a worker thread
    2. Requests the image embedding
    3. Asks the vision model to read the product
    4. Merges the three into one RecognitionSignals

    Local analysis failing means the bytes are not a usable image and
    fails the extraction. A failed embedding or vision call only drops
    those signals; both failing fails the extraction.

    Usage:
        extractor = SignalExtractionOrchestrator()
        signals = await extractor.extract(image_bytes, "jpeg")
        objects = await extractor.detect_objects(shelf_bytes, "jpeg")
    """

    def __init__(
        self,
        embedding_client: EmbeddingClient | None = None,
        vision_analyzer: ProductVisionAnalyzer | None = None,
    ) -> None:
        self._embeddings = embedding_client or EmbeddingClient()
        self._vision = vision_analyzer or ProductVisionAnalyzer()

    async def extract(self, image_bytes: bytes, image_format: str | None = None) -> RecognitionSignals:
        """Extract all recognition signals for one image.

        Raises:
            ExtractionError: If the image cannot be decoded, or no remote
                signal could be obtained.
        """
        local, embedding, vision = await asyncio.gather(
            asyncio.to_thread(analyze_image, image_bytes),
            self._embed(image_bytes),
            self._vision.analyze(image_bytes, image_format),
            return_exceptions=True,
        )

        if isinstance(local, BaseException):
            if isinstance(local, ExtractionError):
                raise local
            msg = f"Local image analysis failed: {local}"
            raise ExtractionError(msg) from local

        if isinstance(embedding, BaseException) and isinstance(vision, BaseException):
            msg = f"Embedding and vision extraction both failed: {embedding}; {vision}"
            raise ExtractionError(msg) from vision

        signals = local
        if image_format and not signals.image_format:
            signals.image_format = image_format

        if isinstance(vision, BaseException):
            logger.warning("Vision analysis unavailable, continuing without it: %s", vision)
        else:
            signals = signals.merge(vision.to_signals())

        if isinstance(embedding, BaseException):
            logger.warning("Embedding unavailable, continuing without it: %s", embedding)
        elif embedding:
            signals = signals.merge(
                RecognitionSignals(
                    embedding=embedding,
                    embedding_model=self._embeddings.model_name,
                    # A sharper, larger image yields a more trustworthy embedding
                    embedding_confidence=signals.quality_score,
                )
            )

        logger.debug(
            "Extracted signals: hash=%s barcode=%s brand=%s model=%s embedding=%s",
            (signals.image_hash or "")[:16],
            signals.barcode.data if signals.barcode else None,
            signals.brand,
            signals.model,
            "yes" if signals.embedding else "no",
        )
        return signals

    async def detect_objects(
        self, image_bytes: bytes, image_format: str | None = None
    ) -> list[DetectedObject]:
        """Locate product instances and crop each one out of the image.

        Raises:
            ExtractionError: If detection fails or the image cannot be decoded.
        """
        detection = await self._vision.detect(image_bytes, image_format)

        objects: list[DetectedObject] = []
        for index, info in enumerate(detection.products):
            box = info.bounding_box.to_bounding_box()
            cropped = await asyncio.to_thread(crop_image, image_bytes, box)
            objects.append(
                DetectedObject(
                    object_index=index,
                    label=info.label,
                    confidence=info.confidence,
                    bounding_box=box,
                    cropped_bytes=cropped,
                    hints=info.to_signals(),
                )
            )
        return objects

    async def _embed(self, image_bytes: bytes) -> list[float] | None:
        embeddings = await self._embeddings.embed_image([image_bytes])
        return embeddings[0] if embeddings else None
