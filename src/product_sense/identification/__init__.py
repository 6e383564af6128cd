"""Product identification module for ProductSense.

Submodules:
- tiers / chain: ordered matching tiers over the product catalog
- resolver: threshold policy turning candidates into a status
- orchestrator: identify_or_create, the single-image entry point
- grouping: detect_and_group for shelf/cart images
- recognition: product creation and monotonic recognition refresh
"""

from product_sense.identification.chain import ChainResult, MatchStrategyChain, rank_matches
from product_sense.identification.grouping import MultipleDetectionGrouper, group_detections
from product_sense.identification.orchestrator import (
    MatchOutcome,
    ProductIdentificationOrchestrator,
)
from product_sense.identification.ports import ProductLookup, ThresholdConfigStore, ValidationStore
from product_sense.identification.resolver import ConfidenceResolver
from product_sense.identification.schemas import (
    DetectedProductGroup,
    DetectedProductMatch,
    IdentificationMatch,
    MultipleProductDetectionResult,
    ProductFallbackFields,
    ProductIdentificationResult,
    Resolution,
)
from product_sense.identification.thresholds import load_active_config

__all__ = [
    "ChainResult",
    "ConfidenceResolver",
    "DetectedProductGroup",
    "DetectedProductMatch",
    "group_detections",
    "IdentificationMatch",
    "load_active_config",
    "MatchOutcome",
    "MatchStrategyChain",
    "MultipleDetectionGrouper",
    "MultipleProductDetectionResult",
    "ProductFallbackFields",
    "ProductIdentificationOrchestrator",
    "ProductIdentificationResult",
    "ProductLookup",
    "rank_matches",
    "Resolution",
    "ThresholdConfigStore",
    "ValidationStore",
]
