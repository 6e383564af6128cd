"""MultipleDetectionGrouper: identify every product in a shelf or cart image.

Objects come from the extractor's detector, each with its own crop. Crops
are extracted concurrently; matching runs one object at a time because
the product lookup shares a single database session. Objects nothing
matches become temporary, unsaved placeholder products.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence

from product_sense.config import settings
from product_sense.errors import ExtractionError, PersistenceError, ValidationError
from product_sense.extraction.base import DetectedObject, RecognitionSignals, SignalExtractor
from product_sense.identification.orchestrator import ProductIdentificationOrchestrator
from product_sense.identification.schemas import (
    DetectedProductGroup,
    DetectedProductMatch,
    MultipleProductDetectionResult,
)
from product_sense.models.enums import TEMPORARY_MATCH, IdentificationStatus
from product_sense.models.product import Product
from product_sense.models.threshold_config import IdentificationThresholdConfig
from product_sense.utils.image_format import require_image

logger = logging.getLogger(__name__)


def temporary_product(obj: DetectedObject, signals: RecognitionSignals | None) -> Product:
    """Unsaved placeholder for a detection nothing matched.

    Ids are negative and unique per object so placeholders never group
    with each other or with real products.
    """
    name = (signals.product_name or signals.brand) if signals is not None else None
    return Product(
        id=-(obj.object_index + 1),
        name=name or obj.label or f"Unknown product {obj.object_index + 1}",
        category_id=settings.new_product_default_category_id,
        brand_name=signals.brand if signals is not None else None,
        model_number=signals.model if signals is not None else None,
        inferred_category=signals.inferred_category if signals is not None else None,
        recognition_count=0,
    )


def group_detections(
    matches: Sequence[DetectedProductMatch],
    confirm_threshold: float,
    *,
    group_by_product: bool = True,
) -> list[DetectedProductGroup]:
    """Fold detections into groups, most confident first.

    Args:
        matches: One entry per detected object.
        confirm_threshold: Average combined confidence a group needs to count
            as confirmed (the active manual-validation threshold).
        group_by_product: Merge detections of the same product id. When
            False every detection is its own group of quantity 1.

    Returns:
        Groups sorted by average confidence (desc), then product id (asc).
    """
    buckets: dict[int, list[DetectedProductMatch]] = {}
    if group_by_product:
        for match in matches:
            buckets.setdefault(match.product.id, []).append(match)
        grouped = list(buckets.values())
    else:
        grouped = [[match] for match in matches]

    groups: list[DetectedProductGroup] = []
    for detections in grouped:
        average = round(sum(d.combined_confidence for d in detections) / len(detections), 4)
        groups.append(
            DetectedProductGroup(
                product=detections[0].product,
                quantity=len(detections),
                average_confidence=average,
                detections=sorted(detections, key=lambda d: d.object_index),
                is_confirmed=average >= confirm_threshold,
            )
        )

    groups.sort(key=lambda g: (-g.average_confidence, g.product.id))
    return groups


class MultipleDetectionGrouper:
    """Detect, identify and count the products in one image.

    Usage:
        grouper = MultipleDetectionGrouper(extractor, orchestrator)
        result = await grouper.detect_and_group(image_bytes)
        for group in result.product_groups:
            print(group.product.name, group.quantity)
    """

    def __init__(
        self,
        extractor: SignalExtractor,
        orchestrator: ProductIdentificationOrchestrator,
    ) -> None:
        self._extractor = extractor
        self._orchestrator = orchestrator

    async def detect_and_group(
        self,
        image_bytes: bytes,
        group_by_product: bool = True,
        min_confidence: float | None = None,
        *,
        image_format: str | None = None,
    ) -> MultipleProductDetectionResult:
        """Identify every detected object and group them by product.

        Matching never creates products. An image with no detections, or
        whose groups all fall under min_confidence, yields ERROR.

        Args:
            image_bytes: Raw image bytes.
            group_by_product: Merge detections of the same product.
            min_confidence: Drop groups whose average confidence is lower.
            image_format: Optional format hint.

        Returns:
            MultipleProductDetectionResult with processing_time_ms stamped.
        """
        started = time.perf_counter()
        # One deadline covers detection and every object's matching
        timeout = self._orchestrator.timeout_seconds

        try:
            fmt = require_image(image_bytes)
            objects = await asyncio.wait_for(
                self._extractor.detect_objects(image_bytes, fmt or image_format),
                timeout=timeout,
            )
        except ValidationError as e:
            return self._error(f"Invalid image: {e}", started)
        except ExtractionError as e:
            logger.warning("Object detection failed: %s", e)
            return self._error(f"Object detection failed: {e}", started)
        except asyncio.TimeoutError:
            logger.warning("Object detection timed out after %.1fs", timeout)
            return self._error(f"Detection timed out after {timeout:.1f}s", started)

        if not objects:
            return self._error("No products detected in image", started)

        remaining = max(timeout - (time.perf_counter() - started), 0.0)
        try:
            config, matches = await asyncio.wait_for(
                self._match_objects(objects), timeout=remaining
            )
        except PersistenceError as e:
            logger.error("Catalog unavailable during multi-object matching: %s", e)
            return self._error(f"Catalog unavailable: {e}", started, total_detections=len(objects))
        except asyncio.TimeoutError:
            logger.warning(
                "Matching %d object(s) timed out after %.1fs", len(objects), timeout
            )
            return self._error(
                f"Identification timed out after {timeout:.1f}s",
                started,
                total_detections=len(objects),
            )

        groups = group_detections(
            matches,
            config.manual_validation_threshold,
            group_by_product=group_by_product,
        )
        if min_confidence is not None:
            groups = [g for g in groups if g.average_confidence >= min_confidence]

        matched = sum(1 for m in matches if not m.product.is_temporary)
        metadata = {
            "detections": len(objects),
            "matched": matched,
            "temporary": len(matches) - matched,
            "groups": len(groups),
            "threshold_config_version": config.model_version,
        }

        if not groups:
            result = self._error(
                f"No product groups at or above {min_confidence:.0%}"
                if min_confidence is not None
                else "No product groups",
                started,
                total_detections=len(objects),
            )
            result.metadata = metadata
            return result

        logger.info(
            "Detected %d object(s): %d matched, %d group(s)",
            len(objects),
            matched,
            len(groups),
        )
        return MultipleProductDetectionResult(
            status=IdentificationStatus.IDENTIFIED,
            product_groups=groups,
            total_detections=len(objects),
            unique_products=len({g.product.id for g in groups}),
            requires_validation=any(not g.is_confirmed for g in groups),
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            details=f"{len(objects)} detection(s) in {len(groups)} group(s)",
            metadata=metadata,
        )

    async def _match_objects(
        self, objects: list[DetectedObject]
    ) -> tuple[IdentificationThresholdConfig, list[DetectedProductMatch]]:
        config = await self._orchestrator.active_config()
        return config, await self._identify_all(objects, config)

    async def _identify_all(
        self,
        objects: list[DetectedObject],
        config: IdentificationThresholdConfig,
    ) -> list[DetectedProductMatch]:
        extracted = await asyncio.gather(
            *(self._extract(obj) for obj in objects), return_exceptions=True
        )

        matches: list[DetectedProductMatch] = []
        for obj, signals in zip(objects, extracted, strict=True):
            if isinstance(signals, BaseException):
                if not isinstance(signals, (ExtractionError, ValidationError)):
                    raise signals
                logger.warning("Extraction failed for object %d: %s", obj.object_index, signals)
                matches.append(self._placeholder(obj, obj.hints))
                continue
            matches.append(await self._identify(obj, signals, config))
        return matches

    async def _extract(self, obj: DetectedObject) -> RecognitionSignals:
        signals = await self._extractor.extract(obj.cropped_bytes)
        if obj.hints is not None:
            # The crop's own reading wins; detector hints fill the gaps
            signals = obj.hints.merge(signals)
        return signals

    async def _identify(
        self,
        obj: DetectedObject,
        signals: RecognitionSignals,
        config: IdentificationThresholdConfig,
    ) -> DetectedProductMatch:
        outcome = await self._orchestrator.match_signals(signals, config, allow_create=False)
        resolution = outcome.resolution
        best = resolution.best

        if resolution.status == IdentificationStatus.ERROR or best is None:
            return self._placeholder(obj, signals)

        return DetectedProductMatch(
            product=best.product,
            bounding_box=obj.bounding_box,
            detection_confidence=obj.confidence,
            identification_confidence=best.confidence,
            combined_confidence=obj.confidence * best.confidence,
            match_type=best.match_type.value,
            object_index=obj.object_index,
            similarity=best.similarity,
            alternative_matches=list(resolution.alternatives),
        )

    @staticmethod
    def _placeholder(
        obj: DetectedObject, signals: RecognitionSignals | None
    ) -> DetectedProductMatch:
        confidence = settings.temporary_product_confidence
        return DetectedProductMatch(
            product=temporary_product(obj, signals),
            bounding_box=obj.bounding_box,
            detection_confidence=obj.confidence,
            identification_confidence=confidence,
            combined_confidence=obj.confidence * confidence,
            match_type=TEMPORARY_MATCH,
            object_index=obj.object_index,
        )

    @staticmethod
    def _error(
        details: str, started: float, *, total_detections: int = 0
    ) -> MultipleProductDetectionResult:
        return MultipleProductDetectionResult(
            status=IdentificationStatus.ERROR,
            product_groups=[],
            total_detections=total_detections,
            unique_products=0,
            requires_validation=True,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            details=details,
        )
