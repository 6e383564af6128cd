"""Business logic services for ProductSense."""

from product_sense.services.feedback import (
    ValidationFeedbackLoop,
    derive_correction_type,
    normalize_match_type,
)
from product_sense.services.product_lookup import ProductLookupService
from product_sense.services.threshold_configs import ThresholdConfigService
from product_sense.services.tuning import AccuracyMetrics, adjust_threshold, tune_config
from product_sense.services.validation_log import ValidationLogService

__all__ = [
    "AccuracyMetrics",
    "adjust_threshold",
    "derive_correction_type",
    "normalize_match_type",
    "ProductLookupService",
    "ThresholdConfigService",
    "tune_config",
    "ValidationFeedbackLoop",
    "ValidationLogService",
]
