"""Threshold tuning math for the validation feedback loop.

Pure functions over validation rows; nothing here touches a store.

Per-tier rule, applied only to tiers with enough recent samples:
- accuracy >= high_accuracy: lower the floor by one step (let more through)
- accuracy < target_accuracy: move by step * (fp - fn) / (fp + fn)
  (false positives push up, false negatives push down; wrong-product
  suggestions alone push up a full step)
- otherwise: leave it

A false negative with no suggesting tier ("none") is a match every tuned
tier missed, so it counts against each of them.

Results are clamped to [min_threshold, max_threshold] and rounded to 4 places.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from product_sense.config import settings
from product_sense.models.enums import NO_MATCH, CorrectionType, MatchType
from product_sense.models.threshold_config import IdentificationThresholdConfig
from product_sense.models.validation import ProductIdentificationValidation

# Probabilistic tiers the feedback loop tunes, and the config field for each.
# Barcode and hash are certainties and keep their floors.
TUNED_TIERS: dict[MatchType, str] = {
    MatchType.BRAND_MODEL: "brand_model_min_confidence",
    MatchType.VISION_MATCH: "vision_match_min_confidence",
    MatchType.VECTOR_SIMILARITY: "vector_similarity_min_confidence",
    MatchType.TAG_CATEGORY: "tag_category_min_confidence",
}


@dataclass
class AccuracyMetrics:
    """Counts and accuracy over a set of validations."""

    total: int
    correct: int
    false_positives: int
    false_negatives: int
    accuracy: float

    @classmethod
    def from_counts(
        cls, total: int, correct: int, false_positives: int, false_negatives: int
    ) -> AccuracyMetrics:
        """Build metrics; accuracy is 0.0 with no validations and clamped to [0, 1]."""
        accuracy = 0.0 if total <= 0 else min(max(correct / total, 0.0), 1.0)
        return cls(
            total=total,
            correct=correct,
            false_positives=false_positives,
            false_negatives=false_negatives,
            accuracy=accuracy,
        )

    @classmethod
    def from_validations(
        cls, validations: Iterable[ProductIdentificationValidation]
    ) -> AccuracyMetrics:
        total = correct = fp = fn = 0
        for v in validations:
            total += 1
            if v.was_correct:
                correct += 1
            if v.correction_type == CorrectionType.FALSE_POSITIVE:
                fp += 1
            elif v.correction_type == CorrectionType.FALSE_NEGATIVE:
                fn += 1
        return cls.from_counts(total, correct, fp, fn)

    def merged(self, other: AccuracyMetrics) -> AccuracyMetrics:
        return AccuracyMetrics.from_counts(
            self.total + other.total,
            self.correct + other.correct,
            self.false_positives + other.false_positives,
            self.false_negatives + other.false_negatives,
        )


def metrics_by_match_type(
    validations: Iterable[ProductIdentificationValidation],
) -> dict[str, AccuracyMetrics]:
    """Group validations by the tier that made the suggestion."""
    buckets: dict[str, list[ProductIdentificationValidation]] = {}
    for v in validations:
        buckets.setdefault(v.match_type, []).append(v)
    return {key: AccuracyMetrics.from_validations(rows) for key, rows in buckets.items()}


def adjust_threshold(
    current: float,
    metrics: AccuracyMetrics,
    *,
    min_samples: int | None = None,
    target_accuracy: float | None = None,
    high_accuracy: float | None = None,
    step: float | None = None,
    min_threshold: float | None = None,
    max_threshold: float | None = None,
) -> float:
    """New floor for one tier given its recent metrics.

    Unset keyword arguments fall back to the retrain_* settings.
    """
    min_samples = min_samples if min_samples is not None else settings.retrain_min_samples_per_tier
    target = target_accuracy if target_accuracy is not None else settings.retrain_target_accuracy
    high = high_accuracy if high_accuracy is not None else settings.retrain_high_accuracy
    step = step if step is not None else settings.retrain_adjustment_step
    lo = min_threshold if min_threshold is not None else settings.retrain_min_threshold
    hi = max_threshold if max_threshold is not None else settings.retrain_max_threshold

    if metrics.total < min_samples:
        return current

    if metrics.accuracy >= high:
        adjusted = current - step
    elif metrics.accuracy < target:
        errors = metrics.false_positives + metrics.false_negatives
        if errors == 0:
            adjusted = current + step
        else:
            adjusted = current + step * (metrics.false_positives - metrics.false_negatives) / errors
    else:
        return current

    return round(min(max(adjusted, lo), hi), 4)


def next_model_version(version: str | None) -> str:
    """Bump a "major.minor" version by 0.1 ("1.9" -> "2.0"). Unparsable -> "1.1"."""
    try:
        current = Decimal(version or "")
    except InvalidOperation:
        return "1.1"
    if not current.is_finite():
        return "1.1"
    return str((current + Decimal("0.1")).quantize(Decimal("0.1")))


def tune_config(
    current: IdentificationThresholdConfig,
    validations: Sequence[ProductIdentificationValidation],
    *,
    now: datetime | None = None,
) -> IdentificationThresholdConfig:
    """Derive the next config version from recent validations.

    Args:
        current: The active config (left untouched).
        validations: Training window, newest first.
        now: Training timestamp (default: current UTC time).

    Returns:
        An unsaved, inactive config with tuned tier floors, fresh counters
        and the next model_version.
    """
    tuned = current.clone()
    per_tier = metrics_by_match_type(validations)
    missed = AccuracyMetrics.from_validations(
        v
        for v in validations
        if v.match_type == NO_MATCH and v.correction_type == CorrectionType.FALSE_NEGATIVE
    )

    for match_type, field_name in TUNED_TIERS.items():
        metrics = per_tier.get(match_type.value)
        if missed.total:
            metrics = missed if metrics is None else metrics.merged(missed)
        if metrics is None:
            continue
        setattr(tuned, field_name, adjust_threshold(getattr(current, field_name), metrics))

    overall = AccuracyMetrics.from_validations(validations)
    tuned.total_identifications = overall.total
    tuned.correct_identifications = overall.correct
    tuned.false_positives = overall.false_positives
    tuned.false_negatives = overall.false_negatives
    tuned.accuracy = overall.accuracy
    tuned.training_samples_count = overall.total
    tuned.last_training_at = now or datetime.now(timezone.utc)
    tuned.model_version = next_model_version(current.model_version)
    return tuned
