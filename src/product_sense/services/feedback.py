"""ValidationFeedbackLoop: record human reviews and retune thresholds.

Validations are append-only. After every save the loop checks how many
validations arrived since the active config was trained; once that reaches
retrain_min_validations it tunes a new config version and activates it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from product_sense.config import settings
from product_sense.errors import ValidationError
from product_sense.identification.ports import ThresholdConfigStore, ValidationStore
from product_sense.identification.thresholds import load_active_config
from product_sense.models.enums import NO_MATCH, CorrectionType, MatchType, ValidationSource
from product_sense.models.threshold_config import IdentificationThresholdConfig
from product_sense.models.validation import ProductIdentificationValidation
from product_sense.services.tuning import AccuracyMetrics, tune_config

logger = logging.getLogger(__name__)

_VALID_MATCH_TYPES = frozenset({m.value for m in MatchType} | {NO_MATCH})


def normalize_match_type(match_type: MatchType | str | None) -> str:
    """Stored form of a match type: the tier value, or "none".

    Raises:
        ValidationError: If the value names no known tier.
    """
    if match_type is None:
        return NO_MATCH
    value = match_type.value if isinstance(match_type, MatchType) else match_type.strip().lower()
    if value not in _VALID_MATCH_TYPES:
        msg = f"Unknown match type: {match_type!r}"
        raise ValidationError(msg)
    return value


def derive_correction_type(
    was_correct: bool,
    suggested_product_id: int | None,
    actual_product_id: int | None,
) -> CorrectionType:
    """Classify a review from what was suggested and what it really was.

    Raises:
        ValidationError: If the inputs contradict each other.
    """
    if was_correct:
        if suggested_product_id != actual_product_id:
            msg = (
                f"Correct validation must confirm the suggestion "
                f"(suggested={suggested_product_id}, actual={actual_product_id})"
            )
            raise ValidationError(msg)
        return CorrectionType.CORRECT
    if suggested_product_id is not None and actual_product_id is None:
        return CorrectionType.FALSE_POSITIVE
    if suggested_product_id is None and actual_product_id is not None:
        return CorrectionType.FALSE_NEGATIVE
    if suggested_product_id is not None and suggested_product_id != actual_product_id:
        return CorrectionType.IMPROVED
    msg = (
        f"Incorrect validation needs a differing suggestion and actual product "
        f"(suggested={suggested_product_id}, actual={actual_product_id})"
    )
    raise ValidationError(msg)


class ValidationFeedbackLoop:
    """Record validations, report accuracy and retrain thresholds.

    Usage:
        loop = ValidationFeedbackLoop(validation_store, config_store)
        await loop.record_correct("ab12...", product_id=7, confidence=0.91,
                                  match_type=MatchType.VECTOR_SIMILARITY)
        metrics = await loop.accuracy_metrics()
    """

    def __init__(
        self,
        validations: ValidationStore,
        configs: ThresholdConfigStore,
        *,
        min_validations: int | None = None,
        window: int | None = None,
    ) -> None:
        """Initialize the loop.

        Args:
            validations: Append-only validation log.
            configs: Threshold config versions.
            min_validations: Validations since last training that trigger an
                automatic retrain (default from settings).
            window: How many recent validations a retrain learns from.
        """
        self._validations = validations
        self._configs = configs
        self._min_validations = (
            min_validations if min_validations is not None else settings.retrain_min_validations
        )
        self._window = window if window is not None else settings.retrain_window

    # ── Recording ────────────────────────────────────────────────────────

    async def record_validation(
        self,
        validation: ProductIdentificationValidation,
        *,
        retrain: bool = True,
    ) -> ProductIdentificationValidation:
        """Append a validation, then retrain if enough have accumulated.

        A failing retrain is logged and does not undo the saved validation.

        Raises:
            ValidationError: On a blank image hash or out-of-range confidence.
            PersistenceError: If the validation cannot be saved.
        """
        self._check(validation)
        saved = await self._validations.save(validation)
        logger.info(
            "Recorded %s validation for image %s (tier=%s, confidence=%.2f)",
            saved.correction_type.value,
            saved.image_hash[:12],
            saved.match_type,
            saved.confidence_score,
        )

        if retrain:
            try:
                await self.check_and_retrain()
            except Exception:
                logger.exception("Retraining after validation %s failed", saved.validation_id)
        return saved

    async def record_outcome(
        self,
        image_hash: str,
        *,
        was_correct: bool,
        suggested_product_id: int | None,
        actual_product_id: int | None,
        confidence: float = 0.0,
        match_type: MatchType | str | None = None,
        **fields: Any,
    ) -> ProductIdentificationValidation:
        """Record a review, deriving its correction type."""
        correction = derive_correction_type(was_correct, suggested_product_id, actual_product_id)
        return await self.record_validation(
            self._build(
                image_hash,
                suggested_product_id=suggested_product_id,
                actual_product_id=actual_product_id,
                confidence=confidence,
                match_type=match_type,
                was_correct=was_correct,
                correction_type=correction,
                **fields,
            )
        )

    async def record_correct(
        self,
        image_hash: str,
        product_id: int,
        confidence: float,
        match_type: MatchType | str,
        **fields: Any,
    ) -> ProductIdentificationValidation:
        """The suggestion was right."""
        return await self.record_validation(
            self._build(
                image_hash,
                suggested_product_id=product_id,
                actual_product_id=product_id,
                confidence=confidence,
                match_type=match_type,
                was_correct=True,
                correction_type=CorrectionType.CORRECT,
                **fields,
            )
        )

    async def record_false_positive(
        self,
        image_hash: str,
        suggested_product_id: int,
        confidence: float,
        match_type: MatchType | str,
        **fields: Any,
    ) -> ProductIdentificationValidation:
        """A product was suggested but the image was a new product."""
        return await self.record_validation(
            self._build(
                image_hash,
                suggested_product_id=suggested_product_id,
                actual_product_id=None,
                confidence=confidence,
                match_type=match_type,
                was_correct=False,
                correction_type=CorrectionType.FALSE_POSITIVE,
                **fields,
            )
        )

    async def record_false_negative(
        self,
        image_hash: str,
        actual_product_id: int,
        match_type: MatchType | str | None = None,
        **fields: Any,
    ) -> ProductIdentificationValidation:
        """Nothing was suggested but the product existed.

        Pass the tier whose below-floor candidate was the right product to
        charge the miss to that tier; without one it counts against every
        tuned tier at the next retrain.
        """
        return await self.record_validation(
            self._build(
                image_hash,
                suggested_product_id=None,
                actual_product_id=actual_product_id,
                confidence=0.0,
                match_type=match_type,
                was_correct=False,
                correction_type=CorrectionType.FALSE_NEGATIVE,
                **fields,
            )
        )

    async def record_improved(
        self,
        image_hash: str,
        suggested_product_id: int,
        actual_product_id: int,
        confidence: float,
        match_type: MatchType | str,
        **fields: Any,
    ) -> ProductIdentificationValidation:
        """The wrong product was suggested; the reviewer picked the right one."""
        return await self.record_validation(
            self._build(
                image_hash,
                suggested_product_id=suggested_product_id,
                actual_product_id=actual_product_id,
                confidence=confidence,
                match_type=match_type,
                was_correct=False,
                correction_type=CorrectionType.IMPROVED,
                **fields,
            )
        )

    # ── Metrics & retraining ─────────────────────────────────────────────

    async def accuracy_metrics(self) -> AccuracyMetrics:
        """Accuracy over every validation ever recorded."""
        return AccuracyMetrics.from_counts(
            total=await self._validations.count_total(),
            correct=await self._validations.count_correct(),
            false_positives=await self._validations.count_false_positives(),
            false_negatives=await self._validations.count_false_negatives(),
        )

    async def check_and_retrain(self) -> IdentificationThresholdConfig | None:
        """Retrain when enough validations arrived since the last training.

        Returns:
            The newly activated config, or None when below the floor.
        """
        pending = await self._validations.count_since_last_training()
        if pending < self._min_validations:
            logger.debug("Retrain not due: %d/%d validations", pending, self._min_validations)
            return None
        logger.info("Retrain due: %d validations since last training", pending)
        return await self.trigger_retraining()

    async def trigger_retraining(self) -> IdentificationThresholdConfig:
        """Tune, save and activate a new config version now.

        The new config is saved and activated in one store step, so exactly
        one config stays active and a failed activation leaves no orphan row.

        Raises:
            PersistenceError: If the new config cannot be saved or activated.
        """
        current = await load_active_config(self._configs)
        window = await self._validations.recent(limit=self._window)
        tuned = tune_config(current, window, now=datetime.now(timezone.utc))

        activated = await self._configs.publish(tuned)
        logger.info(
            "Retrained thresholds %s -> %s on %d validations (accuracy %.2f)",
            current.model_version,
            activated.model_version,
            activated.training_samples_count,
            activated.accuracy or 0.0,
        )
        return activated

    # ── Queries ──────────────────────────────────────────────────────────

    async def recent(self, limit: int = 50) -> list[ProductIdentificationValidation]:
        if limit <= 0:
            msg = f"limit must be positive, got {limit}"
            raise ValidationError(msg)
        return await self._validations.recent(limit=limit)

    async def by_match_type(
        self, match_type: MatchType | str | None
    ) -> list[ProductIdentificationValidation]:
        return await self._validations.by_match_type(normalize_match_type(match_type))

    async def by_source(self, source: ValidationSource) -> list[ProductIdentificationValidation]:
        return await self._validations.by_source(source)

    async def by_date_range(
        self, start: datetime, end: datetime
    ) -> list[ProductIdentificationValidation]:
        if end < start:
            msg = f"Date range end {end.isoformat()} is before start {start.isoformat()}"
            raise ValidationError(msg)
        return await self._validations.by_date_range(start, end)

    async def active_config(self) -> IdentificationThresholdConfig:
        return await load_active_config(self._configs)

    async def configs_by_accuracy(self) -> list[IdentificationThresholdConfig]:
        return await self._configs.all_ordered_by_accuracy()

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _build(
        image_hash: str,
        *,
        suggested_product_id: int | None,
        actual_product_id: int | None,
        confidence: float,
        match_type: MatchType | str | None,
        was_correct: bool,
        correction_type: CorrectionType,
        image_url: str | None = None,
        similarity_score: float | None = None,
        validated_by: int | None = None,
        feedback_notes: str | None = None,
        validation_source: ValidationSource = ValidationSource.MANUAL,
        related_sale_id: int | None = None,
        related_stock_id: int | None = None,
    ) -> ProductIdentificationValidation:
        return ProductIdentificationValidation(
            image_hash=image_hash,
            image_url=image_url,
            suggested_product_id=suggested_product_id,
            actual_product_id=actual_product_id,
            confidence_score=confidence,
            match_type=normalize_match_type(match_type),
            similarity_score=similarity_score,
            was_correct=was_correct,
            correction_type=correction_type,
            validated_by=validated_by,
            feedback_notes=feedback_notes,
            validation_source=validation_source,
            related_sale_id=related_sale_id,
            related_stock_id=related_stock_id,
        )

    @staticmethod
    def _check(validation: ProductIdentificationValidation) -> None:
        if not validation.image_hash or not validation.image_hash.strip():
            msg = "Validation image_hash must not be blank"
            raise ValidationError(msg)
        if not 0.0 <= validation.confidence_score <= 1.0:
            msg = f"confidence_score {validation.confidence_score} outside [0, 1]"
            raise ValidationError(msg)
        if validation.similarity_score is not None and not 0.0 <= validation.similarity_score <= 1.0:
            msg = f"similarity_score {validation.similarity_score} outside [0, 1]"
            raise ValidationError(msg)
        if validation.correction_type is None:
            msg = "Validation correction_type is required"
            raise ValidationError(msg)
        if validation.validation_source is None:
            validation.validation_source = ValidationSource.MANUAL
        validation.match_type = normalize_match_type(validation.match_type)
