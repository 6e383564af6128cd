"""Vision inference for product recognition.

Structured output schemas and the pydantic-ai agents that read product
photos (brand, model, logos, barcode digits) and locate products in
multi-object images.
"""

from product_sense.inference.schemas import (
    DetectedProductInfo,
    ProductVisionAnalysis,
    ShelfDetection,
)
from product_sense.inference.vision import ProductVisionAnalyzer

__all__ = [
    "DetectedProductInfo",
    "ProductVisionAnalysis",
    "ProductVisionAnalyzer",
    "ShelfDetection",
]
