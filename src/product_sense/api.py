"""HTTP routes for product identification, validation and threshold configs."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import date
from functools import lru_cache
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from product_sense.db import async_session_factory, store_errors
from product_sense.extraction.base import SignalExtractor
from product_sense.extraction.orchestrator import SignalExtractionOrchestrator
from product_sense.identification.grouping import MultipleDetectionGrouper
from product_sense.identification.orchestrator import ProductIdentificationOrchestrator
from product_sense.identification.ports import ProductLookup, ThresholdConfigStore, ValidationStore
from product_sense.identification.schemas import ProductFallbackFields
from product_sense.models.enums import ValidationSource
from product_sense.schemas import (
    AccuracyMetricsOut,
    IdentificationResponse,
    MultipleDetectionResponse,
    ThresholdConfigOut,
    ValidationOut,
    ValidationRequest,
)
from product_sense.services.feedback import ValidationFeedbackLoop
from product_sense.services.product_lookup import ProductLookupService
from product_sense.services.threshold_configs import ThresholdConfigService
from product_sense.services.validation_log import ValidationLogService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/product-identification", tags=["product-identification"])


class Stores:
    """The three stores of one request, sharing one session and transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self.products: ProductLookup = ProductLookupService(session)
        self.configs: ThresholdConfigStore = ThresholdConfigService(session)
        self.validations: ValidationStore = ValidationLogService(session)

    async def commit(self) -> None:
        with store_errors("Commit"):
            await self._session.commit()


async def get_stores() -> AsyncIterator[Stores]:
    """Per-request stores; uncommitted work is rolled back when the session closes."""
    async with async_session_factory() as session:
        yield Stores(session)


@lru_cache(maxsize=1)
def get_extractor() -> SignalExtractor:
    return SignalExtractionOrchestrator()


StoresDep = Annotated[Stores, Depends(get_stores)]
ExtractorDep = Annotated[SignalExtractor, Depends(get_extractor)]


def _feedback_loop(stores: Stores) -> ValidationFeedbackLoop:
    return ValidationFeedbackLoop(stores.validations, stores.configs)


@router.post("/identify-or-create", response_model=IdentificationResponse)
async def identify_or_create(
    stores: StoresDep,
    extractor: ExtractorDep,
    image: UploadFile = File(..., description="Product photo"),
    name: str | None = Form(None),
    description: str | None = Form(None),
    category_id: int | None = Form(None),
    stock_quantity: int | None = Form(None),
    expiration_date: date | None = Form(None),
    source: ValidationSource = Form(ValidationSource.MANUAL),
    best_effort: bool = Form(False, description="Suggest below-floor candidates instead of creating"),
) -> IdentificationResponse:
    """Identify the product in a photo, creating it when nothing matches."""
    data = await image.read()
    orchestrator = ProductIdentificationOrchestrator(extractor, stores.products, stores.configs)
    result = await orchestrator.identify_or_create(
        data,
        image.filename,
        ProductFallbackFields(
            name=name,
            description=description,
            category_id=category_id,
            stock_quantity=stock_quantity,
            expiration_date=expiration_date,
            source=source,
        ),
        surface_best_effort=best_effort,
    )
    await stores.commit()
    return IdentificationResponse.from_result(result)


@router.post("/identify-multiple", response_model=MultipleDetectionResponse)
async def identify_multiple(
    stores: StoresDep,
    extractor: ExtractorDep,
    image: UploadFile = File(..., description="Shelf or cart photo"),
    group_by_product: bool = Form(True),
    min_confidence: float | None = Form(None, ge=0.0, le=1.0),
) -> MultipleDetectionResponse:
    """Identify and count every product in a multi-object photo. Never creates products."""
    data = await image.read()
    orchestrator = ProductIdentificationOrchestrator(extractor, stores.products, stores.configs)
    grouper = MultipleDetectionGrouper(extractor, orchestrator)
    result = await grouper.detect_and_group(
        data, group_by_product, min_confidence, image_format=image.filename
    )
    # Bootstrapping the first config is the only possible write here
    await stores.commit()
    return MultipleDetectionResponse.from_result(result)


@router.post("/validate", response_model=ValidationOut, status_code=status.HTTP_201_CREATED)
async def validate(request: ValidationRequest, stores: StoresDep) -> ValidationOut:
    """Record a human review; may retrain thresholds."""
    saved = await _feedback_loop(stores).record_outcome(
        request.image_hash,
        was_correct=request.was_correct,
        suggested_product_id=request.suggested_product_id,
        actual_product_id=request.actual_product_id,
        confidence=request.confidence_score,
        match_type=request.match_type,
        image_url=request.image_url,
        similarity_score=request.similarity_score,
        validated_by=request.validated_by,
        feedback_notes=request.feedback_notes,
        validation_source=request.validation_source,
        related_sale_id=request.related_sale_id,
        related_stock_id=request.related_stock_id,
    )
    await stores.commit()
    return ValidationOut.model_validate(saved)


@router.get("/validations/recent", response_model=list[ValidationOut])
async def recent_validations(
    stores: StoresDep, limit: int = Query(50, ge=1, le=1000)
) -> list[ValidationOut]:
    rows = await _feedback_loop(stores).recent(limit)
    return [ValidationOut.model_validate(v) for v in rows]


@router.get("/config/active", response_model=ThresholdConfigOut)
async def active_config(stores: StoresDep) -> ThresholdConfigOut:
    config = await _feedback_loop(stores).active_config()
    await stores.commit()
    return ThresholdConfigOut.model_validate(config)


@router.get("/config/all", response_model=list[ThresholdConfigOut])
async def all_configs(stores: StoresDep) -> list[ThresholdConfigOut]:
    """Every config version, most accurate first."""
    configs = await _feedback_loop(stores).configs_by_accuracy()
    return [ThresholdConfigOut.model_validate(c) for c in configs]


@router.get("/metrics", response_model=AccuracyMetricsOut)
async def metrics(stores: StoresDep) -> AccuracyMetricsOut:
    return AccuracyMetricsOut.from_metrics(await _feedback_loop(stores).accuracy_metrics())


@router.post("/retrain", response_model=ThresholdConfigOut)
async def retrain(stores: StoresDep) -> ThresholdConfigOut:
    """Tune and activate a new threshold config now, regardless of pending validations."""
    config = await _feedback_loop(stores).trigger_retraining()
    await stores.commit()
    logger.info("Manual retrain activated config v%s", config.model_version)
    return ThresholdConfigOut.model_validate(config)
