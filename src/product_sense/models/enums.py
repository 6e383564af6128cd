"""Enumerations for the ProductSense data model."""

from enum import Enum


class MatchType(str, Enum):
    """Which matching tier produced a candidate.

    Declaration order is the tier priority order of the strategy chain.
    """

    EXACT_BARCODE = "exact_barcode"  # Literal barcode lookup
    EXACT_HASH = "exact_hash"  # Same image bytes seen before
    BRAND_MODEL = "brand_model"  # Exact (brand, model) pair
    VISION_MATCH = "vision_match"  # Vision fields agree, scored by logo/object overlap
    VECTOR_SIMILARITY = "vector_similarity"  # Nearest embedding
    TAG_CATEGORY = "tag_category"  # Loose usage-tag + category fallback
    MULTI_FACTOR = "multi_factor"  # Several signals combined


class IdentificationStatus(str, Enum):
    """Terminal outcome of one identification run."""

    IDENTIFIED = "identified"  # Auto-approved existing product
    PARTIAL_MATCH = "partial_match"  # Probable match, needs confirmation
    NEW_PRODUCT_CREATED = "new_product_created"  # Nothing matched
    MULTIPLE_MATCHES = "multiple_matches"  # Ambiguous candidates
    ERROR = "error"


class CorrectionType(str, Enum):
    """How a human review judged a suggestion."""

    CORRECT = "correct"  # Suggestion was right
    FALSE_POSITIVE = "false_positive"  # Suggested a product, image was a new one
    FALSE_NEGATIVE = "false_negative"  # Suggested nothing, product existed
    IMPROVED = "improved"  # Suggested the wrong product, human picked the right one


class ValidationSource(str, Enum):
    """Which workflow a validation came from."""

    SALE = "sale"
    STOCK = "stock"
    MANUAL = "manual"


# Stored as the match type of validations where nothing was suggested
NO_MATCH = "none"

# Match type of unsaved placeholder products in multi-object results
TEMPORARY_MATCH = "temporary"
