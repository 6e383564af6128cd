"""Database models for ProductSense."""

from product_sense.models.base import Base
from product_sense.models.enums import (
    NO_MATCH,
    TEMPORARY_MATCH,
    CorrectionType,
    IdentificationStatus,
    MatchType,
    ValidationSource,
)
from product_sense.models.product import Product
from product_sense.models.threshold_config import IdentificationThresholdConfig
from product_sense.models.validation import ProductIdentificationValidation

__all__ = [
    "NO_MATCH",
    "TEMPORARY_MATCH",
    "Base",
    "CorrectionType",
    "IdentificationStatus",
    "IdentificationThresholdConfig",
    "MatchType",
    "Product",
    "ProductIdentificationValidation",
    "ValidationSource",
]
