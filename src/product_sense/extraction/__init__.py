"""Signal extraction module.

Turns raw image bytes into RecognitionSignals for the matching chain.

Main entry point:
    from product_sense.extraction.orchestrator import SignalExtractionOrchestrator

    extractor = SignalExtractionOrchestrator()
    signals = await extractor.extract(image_bytes, "jpeg")

Shared types and the local (Pillow) analysis helpers are exported here.
"""

from product_sense.extraction.base import (
    BarcodeSignal,
    BoundingBox,
    DetectedObject,
    RecognitionSignals,
    SignalExtractor,
)
from product_sense.extraction.image import analyze_image, crop_image, image_hash

__all__ = [
    "BarcodeSignal",
    "BoundingBox",
    "DetectedObject",
    "RecognitionSignals",
    "SignalExtractor",
    "analyze_image",
    "crop_image",
    "image_hash",
]
