"""ProductIdentificationValidation: the append-only human feedback log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Float, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from product_sense.models.base import Base
from product_sense.models.enums import CorrectionType, ValidationSource


class ProductIdentificationValidation(Base):
    """One human review of one identification.

    Rows are never updated. A later correction is a new row, which keeps
    accuracy accounting honest.
    """

    __tablename__ = "product_identification_validations"

    validation_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)

    image_hash: Mapped[str] = mapped_column(String(128), index=True)
    image_url: Mapped[str | None] = mapped_column(String(1024))

    suggested_product_id: Mapped[int | None] = mapped_column(
        ForeignKey("products.id", ondelete="SET NULL"), index=True
    )
    """What the system proposed (None when nothing was suggested)."""

    actual_product_id: Mapped[int | None] = mapped_column(
        ForeignKey("products.id", ondelete="SET NULL"), index=True
    )
    """What the reviewer said it really was (None when it was a new product)."""

    confidence_score: Mapped[float] = mapped_column(Float)
    match_type: Mapped[str] = mapped_column(String(32), index=True)
    """MatchType value of the suggesting tier, or "none"."""

    similarity_score: Mapped[float | None] = mapped_column(Float)
    was_correct: Mapped[bool] = mapped_column(Boolean)
    correction_type: Mapped[CorrectionType] = mapped_column(index=True)

    validated_by: Mapped[int | None] = mapped_column(BigInteger)
    validated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    feedback_notes: Mapped[str | None] = mapped_column(Text)

    validation_source: Mapped[ValidationSource] = mapped_column(
        default=ValidationSource.MANUAL, index=True
    )
    related_sale_id: Mapped[int | None] = mapped_column(BigInteger)
    related_stock_id: Mapped[int | None] = mapped_column(BigInteger)
