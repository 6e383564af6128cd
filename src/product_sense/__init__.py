"""ProductSense: image-based product identification and matching."""

__version__ = "0.1.0"
