"""Product model: catalog entries plus their recognition data."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pgvector.sqlalchemy import Vector  # type: ignore[import-untyped]
from sqlalchemy import BigInteger, Date, DateTime, Float, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from product_sense.config import settings
from product_sense.models.base import Base


class Product(Base):
    """A catalog product.

    Besides the plain catalog fields, a product carries an optional
    recognition bundle filled in by image identification. Recognition fields
    only ever improve: a later observation replaces a stored value only when
    it comes with higher confidence.
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    image_url: Mapped[str | None] = mapped_column(String(1024))
    category_id: Mapped[int] = mapped_column(BigInteger, index=True)
    stock_quantity: Mapped[int | None] = mapped_column(Integer)
    stock_minimum: Mapped[int | None] = mapped_column(Integer)
    expiration_date: Mapped[date | None] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    # Recognition bundle
    image_embedding: Mapped[list[Any] | None] = mapped_column(
        Vector(settings.dim_image_embedding)
    )
    embedding_model: Mapped[str | None] = mapped_column(String(128))
    embedding_confidence: Mapped[float | None] = mapped_column(Float)

    image_hash: Mapped[str | None] = mapped_column(String(128), unique=True, index=True)
    """Content hash of the image the product was created from. At most one product per hash."""

    image_quality_score: Mapped[float | None] = mapped_column(Float)
    image_tags: Mapped[list[str] | None] = mapped_column(JSONB, default=list)
    barcode_data: Mapped[str | None] = mapped_column(String(128), index=True)
    barcode_format: Mapped[str | None] = mapped_column(String(32))
    brand_name: Mapped[str | None] = mapped_column(String(255), index=True)
    model_number: Mapped[str | None] = mapped_column(String(255), index=True)
    dominant_colors: Mapped[list[str] | None] = mapped_column(JSONB, default=list)
    text_ocr: Mapped[str | None] = mapped_column(Text)
    logos: Mapped[list[str] | None] = mapped_column(JSONB, default=list)
    objects: Mapped[list[str] | None] = mapped_column(JSONB, default=list)

    recognition_accuracy: Mapped[float | None] = mapped_column(Float)
    """Best identification confidence observed for this product."""

    last_recognition_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    recognition_count: Mapped[int] = mapped_column(Integer, default=0)

    inferred_category: Mapped[str | None] = mapped_column(String(255), index=True)
    inferred_price_range: Mapped[str | None] = mapped_column(String(64))
    inferred_usage_tags: Mapped[list[str] | None] = mapped_column(JSONB, default=list)
    confidence_scores: Mapped[dict[str, Any] | None] = mapped_column(JSONB, default=dict)

    def is_valid(self) -> bool:
        """Name is non-blank and the category id is positive."""
        return bool(self.name and self.name.strip()) and (self.category_id or 0) > 0

    @property
    def has_recognition_data(self) -> bool:
        return (
            self.image_embedding is not None
            or self.image_hash is not None
            or self.barcode_data is not None
            or self.brand_name is not None
        )

    @property
    def is_stock_low(self) -> bool:
        if self.stock_quantity is None or self.stock_minimum is None:
            return False
        return self.stock_quantity <= self.stock_minimum

    @property
    def is_temporary(self) -> bool:
        """Unsaved placeholder built for an unmatched detection."""
        return self.id is not None and self.id < 0
