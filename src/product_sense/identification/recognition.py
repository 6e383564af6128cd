"""Writing recognition signals onto products.

Two write paths exist: building a brand-new product from an unmatched
image, and refreshing an identified product with a new observation. The
refresh is monotonic: a stored value is only replaced by one observed with
higher confidence, and missing fields are filled but never overwritten.
"""

from __future__ import annotations

from datetime import datetime, timezone

from product_sense.config import settings
from product_sense.errors import ValidationError
from product_sense.extraction.base import RecognitionSignals
from product_sense.identification.schemas import ProductFallbackFields
from product_sense.models.product import Product

UNNAMED_PRODUCT = "Unnamed product"

# Optional text fields copied from signals when the product has none yet
_FILL_IF_MISSING: tuple[tuple[str, str], ...] = (
    ("brand_name", "brand"),
    ("model_number", "model"),
    ("inferred_category", "inferred_category"),
    ("inferred_price_range", "inferred_price_range"),
    ("text_ocr", "ocr_text"),
    ("description", "product_description"),
)

# List fields copied from signals when the product's list is empty
_FILL_LIST_IF_EMPTY: tuple[tuple[str, str], ...] = (
    ("logos", "logos"),
    ("objects", "objects"),
    ("image_tags", "image_tags"),
    ("dominant_colors", "dominant_colors"),
    ("inferred_usage_tags", "inferred_usage_tags"),
)


def validate_fallback(fallback: ProductFallbackFields) -> None:
    """Reject fallback fields that could never form a valid product.

    Raises:
        ValidationError: On a blank name or a non-positive category id.
    """
    if fallback.name is not None and not fallback.name.strip():
        msg = "Product name must not be blank"
        raise ValidationError(msg)
    if fallback.category_id is not None and fallback.category_id <= 0:
        msg = f"category_id must be positive, got {fallback.category_id}"
        raise ValidationError(msg)
    if fallback.stock_quantity is not None and fallback.stock_quantity < 0:
        msg = f"stock_quantity must not be negative, got {fallback.stock_quantity}"
        raise ValidationError(msg)


def build_product(
    signals: RecognitionSignals,
    fallback: ProductFallbackFields,
    *,
    now: datetime | None = None,
) -> Product:
    """Build an unsaved Product for an image nothing matched.

    Name falls back from the caller's name to the vision product name to
    the brand. Category defaults to the configured catch-all.

    Raises:
        ValidationError: If the result would not be a valid product.
    """
    now = now or datetime.now(timezone.utc)
    name = fallback.name or signals.product_name or signals.brand or UNNAMED_PRODUCT

    product = Product(
        name=name.strip(),
        description=fallback.description or signals.product_description,
        category_id=(
            fallback.category_id
            if fallback.category_id is not None
            else settings.new_product_default_category_id
        ),
        stock_quantity=fallback.stock_quantity if fallback.stock_quantity is not None else 0,
        expiration_date=fallback.expiration_date,
        image_embedding=signals.embedding,
        embedding_model=signals.embedding_model if signals.embedding else None,
        embedding_confidence=signals.embedding_confidence if signals.embedding else None,
        image_hash=signals.image_hash,
        image_quality_score=signals.quality_score,
        image_tags=list(signals.image_tags),
        barcode_data=signals.barcode.data if signals.barcode else None,
        barcode_format=signals.barcode.format if signals.barcode else None,
        brand_name=signals.brand,
        model_number=signals.model,
        dominant_colors=list(signals.dominant_colors),
        text_ocr=signals.ocr_text,
        logos=list(signals.logos),
        objects=list(signals.objects),
        recognition_accuracy=settings.new_product_recognition_accuracy,
        last_recognition_at=now,
        recognition_count=1,
        inferred_category=signals.inferred_category,
        inferred_price_range=signals.inferred_price_range,
        inferred_usage_tags=list(signals.inferred_usage_tags),
        confidence_scores=dict(signals.confidence_scores),
    )

    if not product.is_valid():
        msg = f"Cannot create product from image: name={product.name!r} category={product.category_id}"
        raise ValidationError(msg)
    return product


def refresh_recognition(
    product: Product,
    signals: RecognitionSignals,
    confidence: float,
    *,
    now: datetime | None = None,
) -> Product:
    """Fold a new observation of an identified product into its recognition data.

    Mutates and returns product. Call it on a row fetched with
    get_for_update so concurrent refreshes serialize on fresh state.
    """
    now = now or datetime.now(timezone.utc)

    product.recognition_count = (product.recognition_count or 0) + 1
    product.last_recognition_at = now
    product.recognition_accuracy = max(product.recognition_accuracy or 0.0, confidence)

    if signals.embedding and (
        product.image_embedding is None
        or (signals.embedding_confidence or 0.0) > (product.embedding_confidence or 0.0)
    ):
        product.image_embedding = signals.embedding
        product.embedding_model = signals.embedding_model
        product.embedding_confidence = signals.embedding_confidence

    if signals.quality_score is not None and signals.quality_score > (product.image_quality_score or 0.0):
        product.image_quality_score = signals.quality_score

    if signals.barcode and not product.barcode_data:
        product.barcode_data = signals.barcode.data
        product.barcode_format = signals.barcode.format

    for product_field, signal_field in _FILL_IF_MISSING:
        value = getattr(signals, signal_field)
        if value and not getattr(product, product_field):
            setattr(product, product_field, value)

    for product_field, signal_field in _FILL_LIST_IF_EMPTY:
        values = getattr(signals, signal_field)
        if values and not getattr(product, product_field):
            setattr(product, product_field, list(values))

    if signals.confidence_scores:
        merged = dict(product.confidence_scores or {})
        for key, value in signals.confidence_scores.items():
            merged[key] = max(merged.get(key, 0.0), value)
        product.confidence_scores = merged

    return product
