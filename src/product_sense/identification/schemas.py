"""Transient data contracts of the identification pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from product_sense.extraction.base import BoundingBox
from product_sense.models.enums import IdentificationStatus, MatchType, ValidationSource
from product_sense.models.product import Product


@dataclass
class IdentificationMatch:
    """One candidate produced by a single matching tier."""

    product: Product
    confidence: float
    """Certainty in [0, 1] that this product is the one in the image."""

    match_type: MatchType
    details: str = ""
    similarity: float | None = None
    """Raw similarity for tiers that compute one (vector, vision)."""

    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProductFallbackFields:
    """Caller-provided fields used when the image turns out to be a new product."""

    name: str | None = None
    description: str | None = None
    category_id: int | None = None
    stock_quantity: int | None = None
    expiration_date: date | None = None
    source: ValidationSource = ValidationSource.MANUAL
    """SALE never creates products: an unknown item cannot be sold."""


@dataclass
class Resolution:
    """ConfidenceResolver verdict for one candidate list."""

    status: IdentificationStatus
    best: IdentificationMatch | None
    alternatives: list[IdentificationMatch]
    requires_validation: bool
    confidence: float
    details: str


@dataclass
class ProductIdentificationResult:
    """Terminal outcome of one identification run."""

    status: IdentificationStatus
    product: Product | None
    is_existing: bool
    confidence: float
    match_type: MatchType | None
    requires_validation: bool
    details: str
    alternative_matches: list[IdentificationMatch] = field(default_factory=list)
    processing_time_ms: int = 0
    image_hash: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def error(cls, details: str, **metadata: Any) -> ProductIdentificationResult:
        """An ERROR result: never carries a product, always needs review."""
        return cls(
            status=IdentificationStatus.ERROR,
            product=None,
            is_existing=False,
            confidence=0.0,
            match_type=None,
            requires_validation=True,
            details=details,
            metadata=dict(metadata),
        )


@dataclass
class DetectedProductMatch:
    """Identification of one object in a multi-object image."""

    product: Product
    bounding_box: BoundingBox
    detection_confidence: float
    """From the object detector: is this a product at all."""

    identification_confidence: float
    """From the matcher: is it this product."""

    combined_confidence: float
    """detection_confidence * identification_confidence."""

    match_type: str
    """MatchType value, or "temporary" for an unsaved placeholder."""

    object_index: int
    similarity: float | None = None
    alternative_matches: list[IdentificationMatch] = field(default_factory=list)


@dataclass
class DetectedProductGroup:
    """Repeated detections of one product folded into a quantity."""

    product: Product
    quantity: int
    average_confidence: float
    detections: list[DetectedProductMatch]
    is_confirmed: bool


@dataclass
class MultipleProductDetectionResult:
    """Outcome of detect_and_group for one shelf/cart image."""

    status: IdentificationStatus
    product_groups: list[DetectedProductGroup]
    total_detections: int
    unique_products: int
    requires_validation: bool
    processing_time_ms: int = 0
    details: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
