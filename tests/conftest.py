"""Shared pytest fixtures for ProductSense tests."""

from __future__ import annotations

import asyncio
import hashlib
import io
from collections.abc import AsyncGenerator, Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import pytest
from PIL import Image
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from product_sense.config import settings
from product_sense.errors import ConflictError, NotFoundError, TierLookupError
from product_sense.extraction.base import (
    BarcodeSignal,
    BoundingBox,
    DetectedObject,
    RecognitionSignals,
)
from product_sense.identification.similarity import cosine_similarity
from product_sense.models import (
    Base,
    CorrectionType,
    IdentificationThresholdConfig,
    Product,
    ProductIdentificationValidation,
    ValidationSource,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


# Use a separate test database to avoid polluting development data
TEST_DATABASE_URL = settings.database_url.replace("/product_sense", "/product_sense_test")


# ─────────────────────────────────────────────────────────────────────────────
# Images
# ─────────────────────────────────────────────────────────────────────────────


def make_image_bytes(
    color: tuple[int, int, int] = (200, 30, 30),
    size: tuple[int, int] = (64, 64),
    fmt: str = "PNG",
) -> bytes:
    """Encode a solid-color image."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes()


# ─────────────────────────────────────────────────────────────────────────────
# In-memory stores
# ─────────────────────────────────────────────────────────────────────────────


class InMemoryProductLookup:
    """ProductLookup over a dict. Set `failures[method] = exc` to make a finder raise."""

    def __init__(self) -> None:
        self.products: dict[int, Product] = {}
        self.failures: dict[str, Exception] = {}
        self.locked: list[int] = []
        self.created: list[Product] = []
        self.updated: list[Product] = []
        self._next_id = 1

    def add(self, product: Product) -> Product:
        if product.id is None:
            product.id = self._next_id
        self._next_id = max(self._next_id, product.id) + 1
        self.products[product.id] = product
        return product

    def _maybe_fail(self, method: str) -> None:
        if method in self.failures:
            raise self.failures[method]

    def _ordered(self) -> list[Product]:
        return [self.products[k] for k in sorted(self.products)]

    async def by_barcode(self, code: str) -> Product | None:
        self._maybe_fail("by_barcode")
        return next((p for p in self._ordered() if p.barcode_data == code), None)

    async def by_image_hash(self, image_hash: str) -> Product | None:
        self._maybe_fail("by_image_hash")
        return next((p for p in self._ordered() if p.image_hash == image_hash), None)

    async def by_exact_fields(
        self, brand: str | None, model: str | None, category: str | None
    ) -> list[Product]:
        self._maybe_fail("by_exact_fields")
        wanted = [
            (attr, value.strip().lower())
            for attr, value in (
                ("brand_name", brand),
                ("model_number", model),
                ("inferred_category", category),
            )
            if value
        ]
        if not wanted:
            return []
        return [
            p
            for p in self._ordered()
            if all((getattr(p, attr) or "").lower() == value for attr, value in wanted)
        ]

    async def by_vector_similarity(
        self,
        embedding: Sequence[float],
        min_similarity: float,
        *,
        embedding_model: str | None = None,
    ) -> tuple[Product, float] | None:
        self._maybe_fail("by_vector_similarity")
        best: tuple[Product, float] | None = None
        for p in self._ordered():
            if p.image_embedding is None:
                continue
            if embedding_model and p.embedding_model != embedding_model:
                continue
            if len(p.image_embedding) != len(embedding):
                msg = "Embedding dimension mismatch"
                raise TierLookupError(msg)
            sim = cosine_similarity(embedding, p.image_embedding)
            if best is None or sim > best[1]:
                best = (p, sim)
        if best is None or best[1] < min_similarity:
            return None
        return best

    async def by_tags_and_category(
        self, tags: Sequence[str], category: str | None
    ) -> list[Product]:
        self._maybe_fail("by_tags_and_category")
        wanted = {t.lower() for t in tags}
        return [
            p
            for p in self._ordered()
            if wanted & {t.lower() for t in p.inferred_usage_tags or []}
            and (category is None or (p.inferred_category or "").lower() == category.lower())
        ]

    async def get(self, product_id: int) -> Product | None:
        return self.products.get(product_id)

    async def get_for_update(self, product_id: int) -> Product | None:
        self.locked.append(product_id)
        return self.products.get(product_id)

    async def create(self, product: Product) -> Product:
        self._maybe_fail("create")
        if product.image_hash and any(
            p.image_hash == product.image_hash for p in self.products.values()
        ):
            msg = f"image_hash {product.image_hash} already exists"
            raise ConflictError(msg)
        self.add(product)
        self.created.append(product)
        return product

    async def update(self, product: Product) -> Product:
        self.products[product.id] = product
        self.updated.append(product)
        return product


class InMemoryThresholdConfigStore:
    """ThresholdConfigStore with an asyncio.Lock standing in for the advisory lock.

    Set `failures["publish"] = exc` to make publishing fail before anything changes.
    """

    def __init__(self) -> None:
        self.configs: dict[int, IdentificationThresholdConfig] = {}
        self.failures: dict[str, Exception] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def active(self) -> IdentificationThresholdConfig | None:
        active = [c for c in self.configs.values() if c.is_active]
        assert len(active) <= 1, "more than one active config"
        return active[0] if active else None

    async def get(self, config_id: int) -> IdentificationThresholdConfig | None:
        return self.configs.get(config_id)

    async def save(self, config: IdentificationThresholdConfig) -> IdentificationThresholdConfig:
        if config.id is None:
            config.id = self._next_id
            self._next_id += 1
        self.configs[config.id] = config
        return config

    async def activate(self, config_id: int) -> IdentificationThresholdConfig:
        async with self._lock:
            target = self.configs.get(config_id)
            if target is None:
                raise NotFoundError("Threshold config", config_id)
            # Yield mid-swap so concurrent activations really interleave
            await asyncio.sleep(0)
            for config in self.configs.values():
                config.is_active = config.id == config_id
            return target

    async def publish(self, config: IdentificationThresholdConfig) -> IdentificationThresholdConfig:
        async with self._lock:
            if "publish" in self.failures:
                raise self.failures["publish"]
            config.id = self._next_id
            self._next_id += 1
            await asyncio.sleep(0)
            for other in self.configs.values():
                other.is_active = False
            config.is_active = True
            self.configs[config.id] = config
            return config

    async def all_ordered_by_accuracy(self) -> list[IdentificationThresholdConfig]:
        return sorted(
            self.configs.values(),
            key=lambda c: (c.accuracy is None, -(c.accuracy or 0.0), -c.id),
        )

    async def delete(self, config_id: int) -> None:
        config = self.configs.get(config_id)
        if config is None:
            raise NotFoundError("Threshold config", config_id)
        if config.is_active:
            msg = f"Threshold config {config_id} is active"
            raise ConflictError(msg)
        del self.configs[config_id]


class InMemoryValidationStore:
    """Append-only ValidationStore. validated_at advances one second per save."""

    def __init__(self, configs: InMemoryThresholdConfigStore) -> None:
        self.rows: list[ProductIdentificationValidation] = []
        self._configs = configs
        self._clock = datetime(2020, 1, 1, tzinfo=timezone.utc)

    async def save(
        self, validation: ProductIdentificationValidation
    ) -> ProductIdentificationValidation:
        self._clock += timedelta(seconds=1)
        validation.validation_id = len(self.rows) + 1
        validation.validated_at = self._clock
        self.rows.append(validation)
        return validation

    async def count_since_last_training(self) -> int:
        active = await self._configs.active()
        since = active.last_training_at if active else None
        return sum(1 for v in self.rows if since is None or v.validated_at > since)

    async def count_total(self) -> int:
        return len(self.rows)

    async def count_correct(self) -> int:
        return sum(1 for v in self.rows if v.was_correct)

    async def count_false_positives(self) -> int:
        return sum(1 for v in self.rows if v.correction_type == CorrectionType.FALSE_POSITIVE)

    async def count_false_negatives(self) -> int:
        return sum(1 for v in self.rows if v.correction_type == CorrectionType.FALSE_NEGATIVE)

    async def find_all(self) -> list[ProductIdentificationValidation]:
        return list(self.rows)

    async def recent(self, limit: int = 50) -> list[ProductIdentificationValidation]:
        return list(reversed(self.rows))[:limit]

    async def by_match_type(self, match_type: str) -> list[ProductIdentificationValidation]:
        return [v for v in reversed(self.rows) if v.match_type == match_type]

    async def by_source(self, source: ValidationSource) -> list[ProductIdentificationValidation]:
        return [v for v in reversed(self.rows) if v.validation_source == source]

    async def by_date_range(
        self, start: datetime, end: datetime
    ) -> list[ProductIdentificationValidation]:
        return [v for v in self.rows if start <= v.validated_at <= end]


class StubSignalExtractor:
    """SignalExtractor returning canned signals keyed by image bytes.

    Unknown bytes yield signals carrying only their sha256, like a real
    extractor whose remote models read nothing.
    """

    def __init__(self) -> None:
        self.signals: dict[bytes, RecognitionSignals] = {}
        self.objects: list[DetectedObject] = []
        self.failures: dict[bytes, Exception] = {}
        self.detect_error: Exception | None = None
        self.delay: float = 0.0
        self.detect_delay: float = 0.0
        self.calls: list[bytes] = []

    def register(self, image_bytes: bytes, signals: RecognitionSignals) -> None:
        if signals.image_hash is None:
            signals.image_hash = sha256(image_bytes)
        self.signals[image_bytes] = signals

    async def extract(self, image_bytes: bytes, image_format: str | None = None) -> RecognitionSignals:
        self.calls.append(image_bytes)
        if self.delay:
            await asyncio.sleep(self.delay)
        if image_bytes in self.failures:
            raise self.failures[image_bytes]
        found = self.signals.get(image_bytes)
        if found is not None:
            return found
        return RecognitionSignals(image_hash=sha256(image_bytes), image_format=image_format)

    async def detect_objects(
        self, image_bytes: bytes, image_format: str | None = None
    ) -> list[DetectedObject]:
        if self.detect_delay:
            await asyncio.sleep(self.detect_delay)
        if self.detect_error is not None:
            raise self.detect_error
        return list(self.objects)


@pytest.fixture
def product_lookup() -> InMemoryProductLookup:
    return InMemoryProductLookup()


@pytest.fixture
def config_store() -> InMemoryThresholdConfigStore:
    return InMemoryThresholdConfigStore()


@pytest.fixture
def validation_store(config_store: InMemoryThresholdConfigStore) -> InMemoryValidationStore:
    return InMemoryValidationStore(config_store)


@pytest.fixture
def extractor() -> StubSignalExtractor:
    return StubSignalExtractor()


@pytest.fixture
async def active_config(
    config_store: InMemoryThresholdConfigStore,
) -> IdentificationThresholdConfig:
    """Bootstrap defaults stored and active."""
    saved = await config_store.save(IdentificationThresholdConfig.bootstrap())
    return await config_store.activate(saved.id)


# ─────────────────────────────────────────────────────────────────────────────
# Factories
# ─────────────────────────────────────────────────────────────────────────────

MakeProduct = Callable[..., Product]
MakeSignals = Callable[..., RecognitionSignals]
MakeConfig = Callable[..., IdentificationThresholdConfig]
MakeDetectedObject = Callable[..., DetectedObject]


@pytest.fixture
def make_product() -> MakeProduct:
    """Factory fixture for creating Product instances."""

    def _make(
        *,
        id: int | None = None,
        name: str = "Test product",
        category_id: int = 1,
        **fields: Any,
    ) -> Product:
        defaults: dict[str, Any] = {
            "logos": [],
            "objects": [],
            "image_tags": [],
            "dominant_colors": [],
            "inferred_usage_tags": [],
            "confidence_scores": {},
            "recognition_count": 0,
        }
        return Product(id=id, name=name, category_id=category_id, **{**defaults, **fields})

    return _make


@pytest.fixture
def make_signals() -> MakeSignals:
    """Factory fixture for RecognitionSignals; `barcode` may be a plain string."""

    def _make(*, barcode: str | BarcodeSignal | None = None, **fields: Any) -> RecognitionSignals:
        if isinstance(barcode, str):
            barcode = BarcodeSignal(data=barcode, format="EAN_13")
        return RecognitionSignals(barcode=barcode, **fields)

    return _make


@pytest.fixture
def make_config() -> MakeConfig:
    """Factory fixture for threshold configs (bootstrap defaults plus overrides)."""

    def _make(**overrides: Any) -> IdentificationThresholdConfig:
        config = IdentificationThresholdConfig.bootstrap()
        for key, value in overrides.items():
            setattr(config, key, value)
        return config

    return _make


@pytest.fixture
def make_detected_object() -> MakeDetectedObject:
    """Factory fixture for DetectedObject instances with distinct crops."""

    def _make(
        object_index: int,
        *,
        confidence: float = 0.9,
        label: str = "product",
        cropped_bytes: bytes | None = None,
        hints: RecognitionSignals | None = None,
    ) -> DetectedObject:
        return DetectedObject(
            object_index=object_index,
            label=label,
            confidence=confidence,
            bounding_box=BoundingBox(0.1 * object_index, 0.0, 0.1, 0.5),
            cropped_bytes=cropped_bytes or make_image_bytes((10 * object_index, 50, 90)),
            hints=hints,
        )

    return _make


# ─────────────────────────────────────────────────────────────────────────────
# PostgreSQL
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine; skip when PostgreSQL is unreachable.

    This creates all tables at the start and drops them at the end.
    """
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    try:
        async with engine.begin() as conn:
            # Enable pgvector extension (required for VECTOR columns)
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:  # noqa: BLE001 (asyncpg raises several unrelated types on connect)
        await engine.dispose()
        pytest.skip(f"PostgreSQL test database unavailable: {e}")

    yield engine

    # Cleanup: drop all tables after tests
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """A session whose work is rolled back at the end of the test."""
    async with session_factory() as session:
        yield session
        await session.rollback()
