"""Pydantic schemas for vision model output.

These schemas define the structured output the vision model produces when
reading a product photo. They are converted into RecognitionSignals before
anything downstream sees them.
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, Field

from product_sense.extraction.base import BarcodeSignal, BoundingBox, RecognitionSignals


def _coerce_to_string_list(v: Any) -> list[str]:
    """Coerce list fields to lists of non-empty strings.

    Models sometimes return a single comma-separated string, or null,
    where a list is expected.
    """
    if v is None:
        return []
    if isinstance(v, str):
        v = v.split(",")
    return [str(item).strip() for item in v if str(item).strip()]


StringList = Annotated[list[str], BeforeValidator(_coerce_to_string_list)]


class VisionBarcode(BaseModel):
    """A barcode the model could read digit by digit."""

    data: str = Field(description="The digits/characters encoded in the barcode")
    format: str | None = Field(
        default=None, description="Symbology if recognizable: EAN_13, UPC_A, CODE_128, QR_CODE"
    )
    confidence: float = Field(default=0.9, ge=0.0, le=1.0)


class ProductVisionAnalysis(BaseModel):
    """Everything the vision model could read from one product photo."""

    product_name: str | None = Field(default=None, description="Commercial product name")
    product_description: str | None = Field(
        default=None, description="One-sentence description of the product"
    )
    brand_name: str | None = Field(default=None, description="Brand as printed on the package")
    model_number: str | None = Field(
        default=None, description="Model, variant or reference code (e.g. 'Zero 350ml')"
    )
    inferred_category: str | None = Field(
        default=None, description="Retail category in lowercase (e.g. 'beverages', 'snacks')"
    )
    inferred_price_range: str | None = Field(
        default=None, description="Rough price band: 'low', 'medium' or 'high'"
    )
    ocr_text: str | None = Field(default=None, description="All legible text on the package")
    logos: StringList = Field(default_factory=list, description="Logos visible in the image")
    objects: StringList = Field(
        default_factory=list, description="Physical objects visible (bottle, can, box, ...)"
    )
    image_tags: StringList = Field(default_factory=list, description="Short visual tags")
    inferred_usage_tags: StringList = Field(
        default_factory=list, description="What the product is used for (e.g. 'drink', 'cleaning')"
    )
    barcode: VisionBarcode | None = Field(default=None, description="Readable barcode, if any")
    confidence: float = Field(
        default=0.7, ge=0.0, le=1.0, description="Overall confidence in this reading"
    )

    def to_signals(self) -> RecognitionSignals:
        """Convert to RecognitionSignals (vision fields only)."""
        return RecognitionSignals(
            barcode=(
                BarcodeSignal(
                    data=self.barcode.data.strip(),
                    format=self.barcode.format,
                    confidence=self.barcode.confidence,
                )
                if self.barcode and self.barcode.data.strip()
                else None
            ),
            brand=self.brand_name,
            model=self.model_number,
            product_name=self.product_name,
            product_description=self.product_description,
            inferred_category=self.inferred_category.lower() if self.inferred_category else None,
            inferred_price_range=self.inferred_price_range,
            ocr_text=self.ocr_text,
            logos=list(self.logos),
            objects=list(self.objects),
            image_tags=list(self.image_tags),
            inferred_usage_tags=list(self.inferred_usage_tags),
            confidence_scores={"vision": self.confidence},
        )


class DetectedBox(BaseModel):
    """Normalized bounding box."""

    x: float = Field(ge=0.0, le=1.0, description="Left edge as a fraction of image width")
    y: float = Field(ge=0.0, le=1.0, description="Top edge as a fraction of image height")
    width: float = Field(gt=0.0, le=1.0, description="Width as a fraction of image width")
    height: float = Field(gt=0.0, le=1.0, description="Height as a fraction of image height")

    def to_bounding_box(self) -> BoundingBox:
        return BoundingBox(self.x, self.y, self.width, self.height).clamped()


class DetectedProductInfo(ProductVisionAnalysis):
    """One product instance located in a multi-object image."""

    label: str = Field(description="Short label for the instance (e.g. 'cola can')")
    bounding_box: DetectedBox = Field(description="Where the instance is in the image")


class ShelfDetection(BaseModel):
    """All product instances in a shelf or cart photo.

    Repeated instances of the same product are listed separately, one
    entry per physical item.
    """

    products: list[DetectedProductInfo] = Field(default_factory=list)
