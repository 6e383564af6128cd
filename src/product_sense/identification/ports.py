"""Storage capabilities the identification core depends on.

The core only talks to these protocols. The SQLAlchemy adapters in
product_sense.services implement them for PostgreSQL + pgvector; tests
use in-memory fakes.

Adapters raise PersistenceError when the store itself fails and
TierLookupError when a lookup cannot run for the given input.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from product_sense.models.enums import ValidationSource
from product_sense.models.product import Product
from product_sense.models.threshold_config import IdentificationThresholdConfig
from product_sense.models.validation import ProductIdentificationValidation


class ProductLookup(Protocol):
    """Product finders used by the matching tiers, plus the two write paths."""

    async def by_barcode(self, code: str) -> Product | None: ...

    async def by_image_hash(self, image_hash: str) -> Product | None: ...

    async def by_exact_fields(
        self,
        brand: str | None,
        model: str | None,
        category: str | None,
    ) -> list[Product]:
        """Case-insensitive equality on every non-None field; None fields are not filtered."""
        ...

    async def by_vector_similarity(
        self,
        embedding: Sequence[float],
        min_similarity: float,
        *,
        embedding_model: str | None = None,
    ) -> tuple[Product, float] | None:
        """The single most similar product at or above min_similarity, with its similarity."""
        ...

    async def by_tags_and_category(
        self, tags: Sequence[str], category: str | None
    ) -> list[Product]: ...

    async def get(self, product_id: int) -> Product | None: ...

    async def get_for_update(self, product_id: int) -> Product | None:
        """Fetch fresh state and hold it until the surrounding transaction ends."""
        ...

    async def create(self, product: Product) -> Product:
        """Persist a new product.

        Raises:
            ConflictError: Another product already holds the image hash.
        """
        ...

    async def update(self, product: Product) -> Product: ...


class ThresholdConfigStore(Protocol):
    """Versioned threshold configs with a single active row."""

    async def active(self) -> IdentificationThresholdConfig | None: ...

    async def get(self, config_id: int) -> IdentificationThresholdConfig | None: ...

    async def save(self, config: IdentificationThresholdConfig) -> IdentificationThresholdConfig: ...

    async def activate(self, config_id: int) -> IdentificationThresholdConfig:
        """Make config_id the only active config, atomically.

        Raises:
            NotFoundError: If config_id does not exist.
        """
        ...

    async def publish(self, config: IdentificationThresholdConfig) -> IdentificationThresholdConfig:
        """Save a new config and make it the only active one, atomically.

        On failure the store is left as it was: no new row, same active config.
        """
        ...

    async def all_ordered_by_accuracy(self) -> list[IdentificationThresholdConfig]: ...

    async def delete(self, config_id: int) -> None:
        """Delete an inactive config.

        Raises:
            NotFoundError: If config_id does not exist.
            ConflictError: If config_id is the active config.
        """
        ...


class ValidationStore(Protocol):
    """Append-only validation log: rows are saved and read, never updated."""

    async def save(
        self, validation: ProductIdentificationValidation
    ) -> ProductIdentificationValidation: ...

    async def count_since_last_training(self) -> int:
        """Validations newer than the active config's last_training_at (all, if never trained)."""
        ...

    async def count_total(self) -> int: ...

    async def count_correct(self) -> int: ...

    async def count_false_positives(self) -> int: ...

    async def count_false_negatives(self) -> int: ...

    async def find_all(self) -> list[ProductIdentificationValidation]: ...

    async def recent(self, limit: int = 50) -> list[ProductIdentificationValidation]:
        """Newest first."""
        ...

    async def by_match_type(self, match_type: str) -> list[ProductIdentificationValidation]: ...

    async def by_source(self, source: ValidationSource) -> list[ProductIdentificationValidation]: ...

    async def by_date_range(
        self, start: datetime, end: datetime
    ) -> list[ProductIdentificationValidation]: ...
