"""Async client wrapper for the image embedding endpoint."""

import base64
import logging
import time
from collections.abc import Sequence
from typing import Any

from openai import AsyncOpenAI, OpenAIError

from product_sense.config import settings
from product_sense.errors import ExtractionError

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """Async client for image embeddings via an OpenAI-compatible gateway.

    The gateway serves a CLIP model; images go over the wire as
    base64 in CLIP's structured input format: [{"image": "..."}].
    """

    # Maximum items per batch request
    DEFAULT_BATCH_SIZE = 16

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._client = AsyncOpenAI(
            base_url=base_url or settings.embedding_base_url,
            api_key=api_key or settings.embedding_api_key,
        )
        self._batch_size = batch_size

    @property
    def model_name(self) -> str:
        return settings.model_image_embedding

    async def embed_image(self, images: Sequence[bytes | str]) -> list[list[float]]:
        """Generate image embeddings.

        Args:
            images: Images as raw bytes, or str (URL or base64).

        Returns:
            One embedding vector per image, in input order.

        Raises:
            ExtractionError: If the gateway call fails.
        """
        if not images:
            return []

        start_time = time.time()
        embeddings: list[list[float]] = []

        for batch in self._batches(list(images)):
            try:
                response = await self._client.embeddings.create(
                    model=settings.model_image_embedding,
                    input=self._to_clip_image_input(batch),  # type: ignore[arg-type]
                )
            except OpenAIError as e:
                msg = f"Image embedding failed: {e}"
                raise ExtractionError(msg) from e
            embeddings.extend([item.embedding for item in response.data])

        if settings.log_api_calls:
            elapsed = (time.time() - start_time) * 1000  # ms
            logger.info(
                "[EMBED] %s (%d images) → %d-dim (%.0fms)",
                settings.model_image_embedding,
                len(images),
                settings.dim_image_embedding,
                elapsed,
            )

        return embeddings

    def _to_clip_image_input(self, images: list[bytes | str]) -> list[dict[str, str]]:
        """Convert images to CLIP's required structured format."""
        result: list[dict[str, str]] = []

        for img in images:
            if isinstance(img, bytes):
                b64 = base64.b64encode(img).decode("utf-8")
                result.append({"image": b64})
            else:
                # Already a string (URL or base64)
                result.append({"image": img})

        return result

    def _batches(self, items: list[Any]) -> list[list[Any]]:
        """Split items into batches."""
        return [items[i : i + self._batch_size] for i in range(0, len(items), self._batch_size)]
