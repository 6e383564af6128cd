"""Versioned threshold configuration for identification decisions."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Index, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from product_sense.config import settings
from product_sense.models.base import Base
from product_sense.models.enums import MatchType

# Tiers whose matches are certainties rather than probabilities
CERTAIN_TIERS = frozenset({MatchType.EXACT_BARCODE, MatchType.EXACT_HASH})


class IdentificationThresholdConfig(Base):
    """All confidence cutoffs used by the matching chain and resolver.

    Thresholds are data so the feedback loop can tune them without a
    redeploy. Every retraining writes a new row with an incremented
    model_version; exactly one row is active at a time. The partial unique
    index makes a second active row impossible at the storage level.
    """

    __tablename__ = "identification_threshold_configs"
    __table_args__ = (
        Index(
            "uq_threshold_config_single_active",
            "is_active",
            unique=True,
            postgresql_where=text("is_active"),
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)

    # Per-tier minimum confidences
    barcode_min_confidence: Mapped[float] = mapped_column(Float)
    hash_min_confidence: Mapped[float] = mapped_column(Float)
    brand_model_min_confidence: Mapped[float] = mapped_column(Float)
    vision_match_min_confidence: Mapped[float] = mapped_column(Float)
    vector_similarity_min_confidence: Mapped[float] = mapped_column(Float)
    tag_category_min_confidence: Mapped[float] = mapped_column(Float)

    # Global decision thresholds
    auto_approve_threshold: Mapped[float] = mapped_column(Float)
    """At or above: no human review needed."""

    manual_validation_threshold: Mapped[float] = mapped_column(Float)
    """Below: not even offered as a suggestion."""

    # Running counters from the validations the config was trained on
    total_identifications: Mapped[int] = mapped_column(Integer, default=0)
    correct_identifications: Mapped[int] = mapped_column(Integer, default=0)
    false_positives: Mapped[int] = mapped_column(Integer, default=0)
    false_negatives: Mapped[int] = mapped_column(Integer, default=0)
    accuracy: Mapped[float | None] = mapped_column(Float)

    last_training_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    training_samples_count: Mapped[int] = mapped_column(Integer, default=0)
    model_version: Mapped[str] = mapped_column(String(32), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @classmethod
    def bootstrap(cls) -> IdentificationThresholdConfig:
        """Build the default config used when no config has been stored yet."""
        return cls(
            barcode_min_confidence=settings.default_barcode_min_confidence,
            hash_min_confidence=settings.default_hash_min_confidence,
            brand_model_min_confidence=settings.default_brand_model_min_confidence,
            vision_match_min_confidence=settings.default_vision_match_min_confidence,
            vector_similarity_min_confidence=settings.default_vector_similarity_min_confidence,
            tag_category_min_confidence=settings.default_tag_category_min_confidence,
            auto_approve_threshold=settings.default_auto_approve_threshold,
            manual_validation_threshold=settings.default_manual_validation_threshold,
            total_identifications=0,
            correct_identifications=0,
            false_positives=0,
            false_negatives=0,
            accuracy=None,
            last_training_at=None,
            training_samples_count=0,
            model_version=settings.default_model_version,
            is_active=False,
        )

    def min_confidence_for(self, match_type: MatchType) -> float:
        """Per-tier floor a candidate must reach for its tier to win the chain."""
        floors = {
            MatchType.EXACT_BARCODE: self.barcode_min_confidence,
            MatchType.EXACT_HASH: self.hash_min_confidence,
            MatchType.BRAND_MODEL: self.brand_model_min_confidence,
            MatchType.VISION_MATCH: self.vision_match_min_confidence,
            MatchType.VECTOR_SIMILARITY: self.vector_similarity_min_confidence,
            MatchType.TAG_CATEGORY: self.tag_category_min_confidence,
        }
        return floors.get(match_type, self.manual_validation_threshold)

    def auto_approve_for(self, match_type: MatchType) -> float:
        """Auto-approve cutoff for a tier.

        Certain tiers keep auto-approving at their own floor even when the
        global auto-approve threshold is raised for the probabilistic tiers.
        """
        if match_type in CERTAIN_TIERS:
            return min(self.auto_approve_threshold, self.min_confidence_for(match_type))
        return self.auto_approve_threshold

    def clone(self) -> IdentificationThresholdConfig:
        """Unsaved, inactive copy carrying every tunable value."""
        return IdentificationThresholdConfig(
            barcode_min_confidence=self.barcode_min_confidence,
            hash_min_confidence=self.hash_min_confidence,
            brand_model_min_confidence=self.brand_model_min_confidence,
            vision_match_min_confidence=self.vision_match_min_confidence,
            vector_similarity_min_confidence=self.vector_similarity_min_confidence,
            tag_category_min_confidence=self.tag_category_min_confidence,
            auto_approve_threshold=self.auto_approve_threshold,
            manual_validation_threshold=self.manual_validation_threshold,
            total_identifications=self.total_identifications,
            correct_identifications=self.correct_identifications,
            false_positives=self.false_positives,
            false_negatives=self.false_negatives,
            accuracy=self.accuracy,
            last_training_at=self.last_training_at,
            training_samples_count=self.training_samples_count,
            model_version=self.model_version,
            is_active=False,
        )
