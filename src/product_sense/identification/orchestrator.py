"""ProductIdentificationOrchestrator: image in, identification result out.

Pipeline:
1. Validate the image bytes and extract recognition signals
2. Run the MatchStrategyChain against the catalog
3. Resolve candidates into a status with the ConfidenceResolver
4. NEW_PRODUCT_CREATED → persist a product built from fallback fields + signals
5. IDENTIFIED → refresh the product's recognition data under a row lock

Steps 1-3 are side-effect free and available on their own as match(); the
MultipleDetectionGrouper uses them per detected object.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from product_sense.config import settings
from product_sense.errors import ConflictError, ExtractionError, PersistenceError, ValidationError
from product_sense.extraction.base import RecognitionSignals, SignalExtractor
from product_sense.identification.chain import ChainResult, MatchStrategyChain
from product_sense.identification.ports import ProductLookup, ThresholdConfigStore
from product_sense.identification.recognition import (
    build_product,
    refresh_recognition,
    validate_fallback,
)
from product_sense.identification.resolver import ConfidenceResolver
from product_sense.identification.schemas import (
    ProductFallbackFields,
    ProductIdentificationResult,
    Resolution,
)
from product_sense.identification.thresholds import load_active_config
from product_sense.models.enums import IdentificationStatus, MatchType, ValidationSource
from product_sense.models.product import Product
from product_sense.models.threshold_config import IdentificationThresholdConfig
from product_sense.utils.image_format import require_image

logger = logging.getLogger(__name__)


@dataclass
class MatchOutcome:
    """Steps 1-3 of an identification, before any persistence."""

    signals: RecognitionSignals
    chain: ChainResult
    resolution: Resolution
    config: IdentificationThresholdConfig


class ProductIdentificationOrchestrator:
    """Identify the product in an image, creating it when nothing matches.

    Usage:
        orchestrator = ProductIdentificationOrchestrator(extractor, lookup, configs)
        result = await orchestrator.identify_or_create(image_bytes, "jpeg", fallback)
        if result.requires_validation:
            queue_for_review(result)
    """

    def __init__(
        self,
        extractor: SignalExtractor,
        lookup: ProductLookup,
        configs: ThresholdConfigStore,
        *,
        chain: MatchStrategyChain | None = None,
        resolver: ConfidenceResolver | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            extractor: Produces RecognitionSignals from image bytes.
            lookup: Product finders and the create/update write paths.
            configs: Source of the active threshold config.
            chain: Tier chain (default: all tiers over lookup).
            resolver: Threshold policy (default margin from settings).
            timeout_seconds: Bound on extraction + matching (default from settings).
        """
        self._extractor = extractor
        self._lookup = lookup
        self._configs = configs
        self._chain = chain or MatchStrategyChain(lookup)
        self._resolver = resolver or ConfidenceResolver()
        self._timeout = (
            timeout_seconds if timeout_seconds is not None else settings.identification_timeout_seconds
        )

    @property
    def timeout_seconds(self) -> float:
        """Bound on extraction + matching for one image."""
        return self._timeout

    async def active_config(self) -> IdentificationThresholdConfig:
        """Active threshold config, bootstrapping defaults on first use."""
        return await load_active_config(self._configs)

    async def match(
        self,
        image_bytes: bytes,
        format_hint: str | None = None,
        *,
        config: IdentificationThresholdConfig | None = None,
        allow_create: bool = True,
        surface_best_effort: bool = False,
    ) -> MatchOutcome:
        """Extract signals, run the chain and resolve. Never writes products.

        Raises:
            ValidationError: If the bytes are not a readable image.
            ExtractionError: If signal extraction fails.
            PersistenceError: If the catalog is unavailable.
        """
        image_format = require_image(image_bytes)
        signals = await self._extractor.extract(image_bytes, image_format or format_hint)
        if config is None:
            config = await self.active_config()
        return await self.match_signals(
            signals,
            config,
            allow_create=allow_create,
            surface_best_effort=surface_best_effort,
        )

    async def match_signals(
        self,
        signals: RecognitionSignals,
        config: IdentificationThresholdConfig,
        *,
        allow_create: bool = True,
        surface_best_effort: bool = False,
    ) -> MatchOutcome:
        """Run the chain and resolver over already-extracted signals."""
        chain_result = await self._chain.run(signals, config)
        resolution = self._resolver.resolve(
            chain_result.matches,
            config,
            allow_create=allow_create,
            surface_best_effort=surface_best_effort,
            near_misses=chain_result.near_misses,
        )
        return MatchOutcome(
            signals=signals,
            chain=chain_result,
            resolution=resolution,
            config=config,
        )

    async def identify_or_create(
        self,
        image_bytes: bytes,
        format_hint: str | None = None,
        fallback: ProductFallbackFields | None = None,
        *,
        surface_best_effort: bool = False,
    ) -> ProductIdentificationResult:
        """Identify the product in an image or create it.

        Bad image bytes, extractor failures, timeouts and catalog outages
        during matching all yield an ERROR result with nothing persisted.

        Args:
            image_bytes: Raw image bytes.
            format_hint: Optional format hint; magic bytes win over it.
            fallback: Caller fields for a new product. SALE sources never
                create: an unmatched sale image is an ERROR.
            surface_best_effort: Offer the best below-floor candidate as a
                PARTIAL_MATCH instead of creating a product.

        Returns:
            ProductIdentificationResult with processing_time_ms stamped.

        Raises:
            ValidationError: If the fallback fields are invalid.
            PersistenceError: If creating or refreshing the product fails.
        """
        started = time.perf_counter()
        fallback = fallback or ProductFallbackFields()
        validate_fallback(fallback)
        allow_create = fallback.source != ValidationSource.SALE

        try:
            outcome = await asyncio.wait_for(
                self.match(
                    image_bytes,
                    format_hint,
                    allow_create=allow_create,
                    surface_best_effort=surface_best_effort,
                ),
                timeout=self._timeout,
            )
        except ValidationError as e:
            return self._stamp(ProductIdentificationResult.error(f"Invalid image: {e}"), started)
        except ExtractionError as e:
            logger.warning("Signal extraction failed: %s", e)
            return self._stamp(
                ProductIdentificationResult.error(f"Signal extraction failed: {e}"), started
            )
        except asyncio.TimeoutError:
            logger.warning("Identification timed out after %.1fs", self._timeout)
            return self._stamp(
                ProductIdentificationResult.error(
                    f"Identification timed out after {self._timeout:.1f}s"
                ),
                started,
            )
        except PersistenceError as e:
            logger.error("Catalog unavailable during matching: %s", e)
            return self._stamp(
                ProductIdentificationResult.error(f"Catalog unavailable: {e}"), started
            )

        result = await self._apply(outcome, fallback)
        logger.info(
            "Identification %s: product=%s confidence=%.2f tier=%s",
            result.status.value,
            result.product.id if result.product is not None else None,
            result.confidence,
            result.match_type.value if result.match_type else None,
        )
        return self._stamp(result, started)

    async def _apply(
        self, outcome: MatchOutcome, fallback: ProductFallbackFields
    ) -> ProductIdentificationResult:
        """Run the mutation path the resolution calls for (steps 4-5)."""
        resolution = outcome.resolution
        signals = outcome.signals
        metadata = self._metadata(outcome)

        if resolution.status == IdentificationStatus.ERROR:
            return ProductIdentificationResult(
                status=IdentificationStatus.ERROR,
                product=None,
                is_existing=False,
                confidence=0.0,
                match_type=None,
                requires_validation=True,
                details=resolution.details,
                image_hash=signals.image_hash,
                metadata=metadata,
            )

        if resolution.status == IdentificationStatus.NEW_PRODUCT_CREATED:
            return await self._create(outcome, fallback, metadata)

        best = resolution.best
        if best is None:
            msg = f"Resolution {resolution.status.value} carries no product"
            raise RuntimeError(msg)

        product = best.product
        if resolution.status == IdentificationStatus.IDENTIFIED:
            product = await self._refresh(product, signals, best.confidence)

        return ProductIdentificationResult(
            status=resolution.status,
            product=product,
            is_existing=True,
            confidence=resolution.confidence,
            match_type=best.match_type,
            requires_validation=resolution.requires_validation,
            details=resolution.details,
            alternative_matches=list(resolution.alternatives),
            image_hash=signals.image_hash,
            metadata=metadata,
        )

    async def _create(
        self,
        outcome: MatchOutcome,
        fallback: ProductFallbackFields,
        metadata: dict[str, Any],
    ) -> ProductIdentificationResult:
        signals = outcome.signals
        product = build_product(signals, fallback)
        try:
            created = await self._lookup.create(product)
        except ConflictError:
            existing = await self._recover_conflict(signals)
            logger.info("Image %s already created as product %s", signals.image_hash, existing.id)
            return ProductIdentificationResult(
                status=IdentificationStatus.IDENTIFIED,
                product=existing,
                is_existing=True,
                confidence=1.0,
                match_type=MatchType.EXACT_HASH,
                requires_validation=False,
                details="Product created concurrently from the same image",
                image_hash=signals.image_hash,
                metadata=metadata,
            )

        logger.info("Created product %s (%s)", created.id, created.name)
        return ProductIdentificationResult(
            status=IdentificationStatus.NEW_PRODUCT_CREATED,
            product=created,
            is_existing=False,
            confidence=outcome.resolution.confidence,
            match_type=None,
            requires_validation=outcome.resolution.requires_validation,
            details=outcome.resolution.details,
            image_hash=signals.image_hash,
            metadata=metadata,
        )

    async def _recover_conflict(self, signals: RecognitionSignals) -> Product:
        """Re-fetch the product another request created from the same image."""
        existing = await self._lookup.by_image_hash(signals.image_hash) if signals.image_hash else None
        if existing is None:
            msg = f"Product create conflicted but no product owns hash {signals.image_hash}"
            raise PersistenceError(msg)
        return existing

    async def _refresh(
        self, product: Product, signals: RecognitionSignals, confidence: float
    ) -> Product:
        locked = await self._lookup.get_for_update(product.id)
        if locked is None:
            logger.warning("Product %s vanished before recognition refresh", product.id)
            return product
        refresh_recognition(locked, signals, confidence)
        return await self._lookup.update(locked)

    @staticmethod
    def _metadata(outcome: MatchOutcome) -> dict[str, Any]:
        signals = outcome.signals
        config = outcome.config
        chain = outcome.chain
        return {
            "vision_brand": signals.brand,
            "vision_model": signals.model,
            "vision_category": signals.inferred_category,
            "threshold_config_version": config.model_version,
            "auto_approve_threshold": config.auto_approve_threshold,
            "winning_tier": chain.winning_tier.value if chain.winning_tier else None,
            "tiers_attempted": [t.value for t in chain.tiers_attempted],
            "tiers_degraded": [t.value for t in chain.tiers_degraded],
        }

    @staticmethod
    def _stamp(
        result: ProductIdentificationResult, started: float
    ) -> ProductIdentificationResult:
        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        return result
