"""Pydantic request/response models for the HTTP API.

Each response mirrors a core dataclass or ORM row field for field; the
from_* constructors do the conversion so routes stay thin.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from product_sense.extraction.base import BoundingBox
from product_sense.identification.schemas import (
    DetectedProductGroup,
    DetectedProductMatch,
    IdentificationMatch,
    MultipleProductDetectionResult,
    ProductIdentificationResult,
)
from product_sense.models.enums import CorrectionType, IdentificationStatus, ValidationSource
from product_sense.services.tuning import AccuracyMetrics


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None = None
    category_id: int
    stock_quantity: int | None = None
    expiration_date: date | None = None
    brand_name: str | None = None
    model_number: str | None = None
    barcode_data: str | None = None
    image_hash: str | None = None
    inferred_category: str | None = None
    recognition_count: int | None = None
    recognition_accuracy: float | None = None
    is_temporary: bool = False


class MatchOut(BaseModel):
    product: ProductOut
    confidence: float
    match_type: str
    details: str = ""
    similarity: float | None = None

    @classmethod
    def from_match(cls, match: IdentificationMatch) -> MatchOut:
        return cls(
            product=ProductOut.model_validate(match.product),
            confidence=match.confidence,
            match_type=match.match_type.value,
            details=match.details,
            similarity=match.similarity,
        )


class IdentificationResponse(BaseModel):
    """Result of identify-or-create."""

    status: IdentificationStatus
    product: ProductOut | None
    is_existing: bool
    confidence: float
    match_type: str | None
    requires_validation: bool
    details: str
    alternative_matches: list[MatchOut] = Field(default_factory=list)
    processing_time_ms: int
    image_hash: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: ProductIdentificationResult) -> IdentificationResponse:
        return cls(
            status=result.status,
            product=ProductOut.model_validate(result.product) if result.product else None,
            is_existing=result.is_existing,
            confidence=result.confidence,
            match_type=result.match_type.value if result.match_type else None,
            requires_validation=result.requires_validation,
            details=result.details,
            alternative_matches=[MatchOut.from_match(m) for m in result.alternative_matches],
            processing_time_ms=result.processing_time_ms,
            image_hash=result.image_hash,
            metadata=result.metadata,
        )


class BoundingBoxOut(BaseModel):
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_box(cls, box: BoundingBox) -> BoundingBoxOut:
        return cls(x=box.x, y=box.y, width=box.width, height=box.height)


class DetectionOut(BaseModel):
    object_index: int
    product: ProductOut
    bounding_box: BoundingBoxOut
    detection_confidence: float
    identification_confidence: float
    combined_confidence: float
    match_type: str
    similarity: float | None = None

    @classmethod
    def from_match(cls, match: DetectedProductMatch) -> DetectionOut:
        return cls(
            object_index=match.object_index,
            product=ProductOut.model_validate(match.product),
            bounding_box=BoundingBoxOut.from_box(match.bounding_box),
            detection_confidence=match.detection_confidence,
            identification_confidence=match.identification_confidence,
            combined_confidence=match.combined_confidence,
            match_type=match.match_type,
            similarity=match.similarity,
        )


class ProductGroupOut(BaseModel):
    product: ProductOut
    quantity: int
    average_confidence: float
    is_confirmed: bool
    detections: list[DetectionOut]

    @classmethod
    def from_group(cls, group: DetectedProductGroup) -> ProductGroupOut:
        return cls(
            product=ProductOut.model_validate(group.product),
            quantity=group.quantity,
            average_confidence=group.average_confidence,
            is_confirmed=group.is_confirmed,
            detections=[DetectionOut.from_match(d) for d in group.detections],
        )


class MultipleDetectionResponse(BaseModel):
    """Result of identify-multiple."""

    status: IdentificationStatus
    product_groups: list[ProductGroupOut]
    total_detections: int
    unique_products: int
    requires_validation: bool
    processing_time_ms: int
    details: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: MultipleProductDetectionResult) -> MultipleDetectionResponse:
        return cls(
            status=result.status,
            product_groups=[ProductGroupOut.from_group(g) for g in result.product_groups],
            total_detections=result.total_detections,
            unique_products=result.unique_products,
            requires_validation=result.requires_validation,
            processing_time_ms=result.processing_time_ms,
            details=result.details,
            metadata=result.metadata,
        )


class ValidationRequest(BaseModel):
    """A human review of one identification."""

    image_hash: str = Field(min_length=1, description="Hash of the identified image")
    was_correct: bool
    suggested_product_id: int | None = Field(default=None, description="What the system proposed")
    actual_product_id: int | None = Field(default=None, description="What it really was")
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    match_type: str | None = Field(default=None, description="Tier that made the suggestion")
    similarity_score: float | None = Field(default=None, ge=0.0, le=1.0)
    image_url: str | None = None
    validated_by: int | None = None
    feedback_notes: str | None = None
    validation_source: ValidationSource = ValidationSource.MANUAL
    related_sale_id: int | None = None
    related_stock_id: int | None = None


class ValidationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    validation_id: int
    image_hash: str
    suggested_product_id: int | None
    actual_product_id: int | None
    confidence_score: float
    match_type: str
    similarity_score: float | None
    was_correct: bool
    correction_type: CorrectionType
    validated_by: int | None
    validated_at: datetime | None
    feedback_notes: str | None
    validation_source: ValidationSource


class ThresholdConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    barcode_min_confidence: float
    hash_min_confidence: float
    brand_model_min_confidence: float
    vision_match_min_confidence: float
    vector_similarity_min_confidence: float
    tag_category_min_confidence: float
    auto_approve_threshold: float
    manual_validation_threshold: float
    total_identifications: int
    correct_identifications: int
    false_positives: int
    false_negatives: int
    accuracy: float | None
    last_training_at: datetime | None
    training_samples_count: int
    model_version: str
    is_active: bool


class AccuracyMetricsOut(BaseModel):
    total: int
    correct: int
    false_positives: int
    false_negatives: int
    accuracy: float

    @classmethod
    def from_metrics(cls, metrics: AccuracyMetrics) -> AccuracyMetricsOut:
        return cls(
            total=metrics.total,
            correct=metrics.correct,
            false_positives=metrics.false_positives,
            false_negatives=metrics.false_negatives,
            accuracy=metrics.accuracy,
        )
