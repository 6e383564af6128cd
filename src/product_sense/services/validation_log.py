"""ValidationLogService: the append-only validation log in PostgreSQL."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from product_sense.db import savepoint, store_errors
from product_sense.models.enums import CorrectionType, ValidationSource
from product_sense.models.threshold_config import IdentificationThresholdConfig
from product_sense.models.validation import ProductIdentificationValidation

Validation = ProductIdentificationValidation


class ValidationLogService:
    """PostgreSQL implementation of the ValidationStore protocol.

    Rows are inserted and read, never updated.

    Usage:
        async with async_session_factory() as session:
            log = ValidationLogService(session)
            pending = await log.count_since_last_training()
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the service with a database session."""
        self._session = session

    async def save(self, validation: Validation) -> Validation:
        async with savepoint(self._session, "Validation save"):
            self._session.add(validation)
            await self._session.flush()
            # validated_at is a server default
            await self._session.refresh(validation)
        return validation

    async def count_since_last_training(self) -> int:
        """Validations newer than the active config's last_training_at."""
        with store_errors("Last training lookup"):
            last_training_at = await self._session.scalar(
                select(IdentificationThresholdConfig.last_training_at).where(
                    IdentificationThresholdConfig.is_active.is_(True)
                )
            )
        stmt = select(func.count()).select_from(Validation)
        if last_training_at is not None:
            stmt = stmt.where(Validation.validated_at > last_training_at)
        return await self._count(stmt)

    async def count_total(self) -> int:
        return await self._count(select(func.count()).select_from(Validation))

    async def count_correct(self) -> int:
        return await self._count(
            select(func.count()).select_from(Validation).where(Validation.was_correct.is_(True))
        )

    async def count_false_positives(self) -> int:
        return await self._count_correction(CorrectionType.FALSE_POSITIVE)

    async def count_false_negatives(self) -> int:
        return await self._count_correction(CorrectionType.FALSE_NEGATIVE)

    async def find_all(self) -> list[Validation]:
        return await self._list(
            select(Validation).order_by(Validation.validated_at, Validation.validation_id)
        )

    async def recent(self, limit: int = 50) -> list[Validation]:
        return await self._list(
            select(Validation)
            .order_by(Validation.validated_at.desc(), Validation.validation_id.desc())
            .limit(limit)
        )

    async def by_match_type(self, match_type: str) -> list[Validation]:
        return await self._list(
            select(Validation)
            .where(Validation.match_type == match_type)
            .order_by(Validation.validated_at.desc(), Validation.validation_id.desc())
        )

    async def by_source(self, source: ValidationSource) -> list[Validation]:
        return await self._list(
            select(Validation)
            .where(Validation.validation_source == source)
            .order_by(Validation.validated_at.desc(), Validation.validation_id.desc())
        )

    async def by_date_range(self, start: datetime, end: datetime) -> list[Validation]:
        """Validations with start <= validated_at <= end, oldest first."""
        return await self._list(
            select(Validation)
            .where(Validation.validated_at >= start, Validation.validated_at <= end)
            .order_by(Validation.validated_at, Validation.validation_id)
        )

    async def _count_correction(self, correction: CorrectionType) -> int:
        return await self._count(
            select(func.count())
            .select_from(Validation)
            .where(Validation.correction_type == correction)
        )

    async def _count(self, stmt: Select[tuple[int]]) -> int:
        with store_errors("Validation count"):
            return int(await self._session.scalar(stmt) or 0)

    async def _list(self, stmt: Select[tuple[Validation]]) -> list[Validation]:
        with store_errors("Validation query"):
            result = await self._session.execute(stmt)
        return list(result.scalars().all())
