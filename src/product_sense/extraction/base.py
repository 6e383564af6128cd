"""Base types for signal extraction."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class BarcodeSignal:
    """A barcode read from the image."""

    data: str
    format: str | None = None  # EAN_13, UPC_A, QR_CODE, ...
    confidence: float = 1.0


@dataclass
class RecognitionSignals:
    """Structured signals extracted from one product image.

    Transient: created per request and never persisted as-is. Fields the
    matching chain cares about land on the Product when one is created or
    refreshed. Every field is optional; extractors populate what they can.

    The embedding is opaque. Matching never looks inside it, it only hands
    it to the similarity search together with embedding_model.
    """

    # Identity
    image_hash: str | None = None  # sha256 of the raw bytes
    image_format: str | None = None
    size_bytes: int = 0

    # Embedding (opaque vector + model tag)
    embedding: list[float] | None = None
    embedding_model: str | None = None
    embedding_confidence: float | None = None

    quality_score: float | None = None  # 0..1
    dominant_colors: list[str] = field(default_factory=list)

    # Vision fields
    barcode: BarcodeSignal | None = None
    brand: str | None = None
    model: str | None = None
    product_name: str | None = None
    product_description: str | None = None
    inferred_category: str | None = None
    inferred_price_range: str | None = None
    ocr_text: str | None = None
    logos: list[str] = field(default_factory=list)
    objects: list[str] = field(default_factory=list)
    image_tags: list[str] = field(default_factory=list)
    inferred_usage_tags: list[str] = field(default_factory=list)

    confidence_scores: dict[str, float] = field(default_factory=dict)
    """Per-signal confidence breakdown (e.g. {"brand": 0.9, "ocr": 0.7})."""

    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def has_usable_signal(self) -> bool:
        """True when at least one matching tier can run."""
        return bool(
            self.barcode
            or self.image_hash
            or self.brand
            or self.model
            or self.inferred_category
            or self.embedding
            or self.inferred_usage_tags
        )

    def merge(self, other: RecognitionSignals) -> RecognitionSignals:
        """Merge another result into this one. Other's values take precedence for non-empty."""
        return RecognitionSignals(
            image_hash=other.image_hash or self.image_hash,
            image_format=other.image_format or self.image_format,
            size_bytes=other.size_bytes or self.size_bytes,
            embedding=other.embedding or self.embedding,
            embedding_model=other.embedding_model or self.embedding_model,
            embedding_confidence=(
                other.embedding_confidence
                if other.embedding_confidence is not None
                else self.embedding_confidence
            ),
            quality_score=(
                other.quality_score if other.quality_score is not None else self.quality_score
            ),
            dominant_colors=other.dominant_colors or self.dominant_colors,
            barcode=other.barcode or self.barcode,
            brand=other.brand or self.brand,
            model=other.model or self.model,
            product_name=other.product_name or self.product_name,
            product_description=other.product_description or self.product_description,
            inferred_category=other.inferred_category or self.inferred_category,
            inferred_price_range=other.inferred_price_range or self.inferred_price_range,
            ocr_text=other.ocr_text or self.ocr_text,
            logos=other.logos or self.logos,
            objects=other.objects or self.objects,
            image_tags=other.image_tags or self.image_tags,
            inferred_usage_tags=other.inferred_usage_tags or self.inferred_usage_tags,
            confidence_scores={**self.confidence_scores, **other.confidence_scores},
            extra={**self.extra, **other.extra},
        )


@dataclass(frozen=True)
class BoundingBox:
    """Normalized box, every coordinate in [0, 1] relative to the image size."""

    x: float
    y: float
    width: float
    height: float

    @classmethod
    def full_image(cls) -> BoundingBox:
        return cls(0.0, 0.0, 1.0, 1.0)

    def clamped(self) -> BoundingBox:
        """Clip the box so it stays inside the image."""
        x = min(max(self.x, 0.0), 1.0)
        y = min(max(self.y, 0.0), 1.0)
        return BoundingBox(
            x=x,
            y=y,
            width=min(max(self.width, 0.0), 1.0 - x),
            height=min(max(self.height, 0.0), 1.0 - y),
        )


@dataclass
class DetectedObject:
    """One object found in a multi-object image."""

    object_index: int
    label: str
    confidence: float
    """Detector confidence that this is a product at all."""

    bounding_box: BoundingBox
    cropped_bytes: bytes
    """The object's region cut out of the source image."""

    hints: RecognitionSignals | None = None
    """Vision fields the detector already read for this object, if any."""


class SignalExtractor(Protocol):
    """Protocol for image signal extractors.

    Extractors are async to support IO-bound operations (embedding APIs,
    vision models). Failures raise ExtractionError.
    """

    async def extract(self, image_bytes: bytes, image_format: str | None = None) -> RecognitionSignals:
        """Extract recognition signals from raw image bytes.

        Args:
            image_bytes: Raw image bytes.
            image_format: Optional format hint ("jpeg", "png", ...).

        Returns:
            RecognitionSignals with every signal the extractor could produce.
        """
        ...

    async def detect_objects(
        self, image_bytes: bytes, image_format: str | None = None
    ) -> list[DetectedObject]:
        """Find the individual products in a shelf/cart image.

        Args:
            image_bytes: Raw image bytes.
            image_format: Optional format hint.

        Returns:
            One DetectedObject per product instance, with cropped bytes.
        """
        ...
