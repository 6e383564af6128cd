"""ProductLookupService: the catalog finders behind the matching tiers.

PostgreSQL + pgvector implementation of the ProductLookup protocol.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import array
from sqlalchemy.ext.asyncio import AsyncSession

from product_sense.config import settings
from product_sense.db import savepoint, store_errors
from product_sense.errors import TierLookupError
from product_sense.identification.similarity import similarity_from_distance
from product_sense.models.product import Product

logger = logging.getLogger(__name__)


class ProductLookupService:
    """Catalog queries and the product write paths.

    Usage:
        async with async_session_factory() as session:
            lookup = ProductLookupService(session)
            product = await lookup.by_barcode("4006381333931")
    """

    def __init__(self, session: AsyncSession, *, max_candidates: int = 50) -> None:
        """Initialize the service.

        Args:
            session: Database session for queries.
            max_candidates: Cap on rows returned by the multi-row finders.
        """
        self._session = session
        self._max_candidates = max_candidates

    async def by_barcode(self, code: str) -> Product | None:
        stmt = select(Product).where(Product.barcode_data == code).order_by(Product.id).limit(1)
        with store_errors("Barcode lookup"):
            result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def by_image_hash(self, image_hash: str) -> Product | None:
        stmt = select(Product).where(Product.image_hash == image_hash).limit(1)
        with store_errors("Image hash lookup"):
            result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def by_exact_fields(
        self,
        brand: str | None,
        model: str | None,
        category: str | None,
    ) -> list[Product]:
        """Case-insensitive equality on each given field. No fields, no results."""
        conditions = [
            func.lower(column) == value.strip().lower()
            for column, value in (
                (Product.brand_name, brand),
                (Product.model_number, model),
                (Product.inferred_category, category),
            )
            if value
        ]
        if not conditions:
            return []

        stmt = select(Product).where(*conditions).order_by(Product.id).limit(self._max_candidates)
        with store_errors("Exact field lookup"):
            result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def by_vector_similarity(
        self,
        embedding: Sequence[float],
        min_similarity: float,
        *,
        embedding_model: str | None = None,
    ) -> tuple[Product, float] | None:
        """Nearest stored embedding via pgvector's cosine distance operator (<=>).

        Only embeddings from the same model are comparable, so the search is
        restricted to embedding_model when one is given.

        Raises:
            TierLookupError: If the embedding has the wrong dimension.
        """
        dim = settings.dim_image_embedding
        if len(embedding) != dim:
            msg = f"Embedding dimension mismatch: got {len(embedding)}, expected {dim}"
            raise TierLookupError(msg)

        distance = Product.image_embedding.cosine_distance(list(embedding)).label("distance")
        stmt = (
            select(Product, distance)
            .where(Product.image_embedding.isnot(None))
            .order_by("distance", Product.id)
            .limit(1)
        )
        if embedding_model:
            stmt = stmt.where(Product.embedding_model == embedding_model)

        with store_errors("Vector similarity lookup"):
            result = await self._session.execute(stmt)
        row = result.first()
        if row is None:
            return None

        similarity = similarity_from_distance(row.distance)
        if similarity < min_similarity:
            logger.debug(
                "Nearest product %s at %.3f below %.3f", row.Product.id, similarity, min_similarity
            )
            return None
        return row.Product, similarity

    async def by_tags_and_category(
        self, tags: Sequence[str], category: str | None
    ) -> list[Product]:
        """Products sharing at least one usage tag (and the category, when given)."""
        stripped = [t.strip() for t in tags if t and t.strip()]
        wanted = sorted({*stripped, *(t.lower() for t in stripped)})
        if not wanted:
            return []

        stmt = select(Product).where(Product.inferred_usage_tags.has_any(array(wanted)))
        if category:
            stmt = stmt.where(func.lower(Product.inferred_category) == category.strip().lower())
        stmt = stmt.order_by(Product.id).limit(self._max_candidates)

        with store_errors("Tag/category lookup"):
            result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get(self, product_id: int) -> Product | None:
        with store_errors("Product fetch"):
            return await self._session.get(Product, product_id)

    async def get_for_update(self, product_id: int) -> Product | None:
        """Row-lock the product and reload it, discarding any stale identity-map state."""
        stmt = (
            select(Product)
            .where(Product.id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        with store_errors("Product lock"):
            result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, product: Product) -> Product:
        """Insert a product.

        Raises:
            ConflictError: Another product already holds the image hash.
        """
        async with savepoint(self._session, "Product create"):
            self._session.add(product)
            await self._session.flush()
        return product

    async def update(self, product: Product) -> Product:
        async with savepoint(self._session, f"Product {product.id} update"):
            if product not in self._session:
                product = await self._session.merge(product)
            await self._session.flush()
        return product
