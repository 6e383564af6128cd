"""Utility functions for ProductSense."""

from product_sense.utils.image_format import (
    SUPPORTED_IMAGE_EXTENSIONS,
    media_type_for,
    sniff_image_format,
    require_image,
)

__all__ = [
    "SUPPORTED_IMAGE_EXTENSIONS",
    "media_type_for",
    "sniff_image_format",
    "require_image",
]
