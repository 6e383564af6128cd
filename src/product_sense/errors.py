"""Error taxonomy for ProductSense.

Every error raised by the identification core derives from ProductSenseError
so callers can catch the whole family. How each one is handled:

- ValidationError: malformed input, rejected before any persistence.
- NotFoundError: a referenced product/config/validation id does not exist.
- ConflictError: a uniqueness race (e.g. duplicate image hash on create).
  Recovered locally by re-fetching the winning row.
- ExtractionError: the signal extractor failed or timed out. Surfaces as
  identification status ERROR; retrying the whole identification is safe.
- PersistenceError: the downstream store failed. Propagated, never retried.
- TierLookupError: a single matching tier could not run its lookup (bad
  input for that tier). The tier degrades to "found nothing".
"""

from __future__ import annotations


class ProductSenseError(Exception):
    """Base class for all ProductSense errors."""


class ValidationError(ProductSenseError):
    """Malformed or missing input."""


class NotFoundError(ProductSenseError):
    """A referenced entity does not exist."""

    def __init__(self, kind: str, identifier: object) -> None:
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class ConflictError(ProductSenseError):
    """A write lost a uniqueness race or would break an invariant."""


class ExtractionError(ProductSenseError):
    """Signal extraction failed or timed out."""


class PersistenceError(ProductSenseError):
    """The backing store failed."""


class TierLookupError(ProductSenseError):
    """A matching tier's lookup could not be performed."""
