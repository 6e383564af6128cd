"""ThresholdConfigService: versioned threshold configs with a single active row."""

from __future__ import annotations

import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from product_sense.db import savepoint, store_errors
from product_sense.errors import ConflictError, NotFoundError
from product_sense.models.threshold_config import IdentificationThresholdConfig

logger = logging.getLogger(__name__)

# pg_advisory_xact_lock key serializing activations across sessions
ACTIVATION_LOCK_KEY = 0x5053_4143  # "PSAC"


class ThresholdConfigService:
    """PostgreSQL implementation of the ThresholdConfigStore protocol.

    Activation deactivates the old row and activates the new one inside one
    transaction under an advisory lock, so readers never see zero or two
    active configs. The partial unique index backs this up.

    Usage:
        async with async_session_factory() as session:
            configs = ThresholdConfigService(session)
            await configs.publish(IdentificationThresholdConfig.bootstrap())
            await session.commit()
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the service with a database session."""
        self._session = session

    async def active(self) -> IdentificationThresholdConfig | None:
        stmt = select(IdentificationThresholdConfig).where(
            IdentificationThresholdConfig.is_active.is_(True)
        )
        with store_errors("Active config lookup"):
            result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, config_id: int) -> IdentificationThresholdConfig | None:
        with store_errors("Config fetch"):
            return await self._session.get(IdentificationThresholdConfig, config_id)

    async def save(self, config: IdentificationThresholdConfig) -> IdentificationThresholdConfig:
        async with savepoint(self._session, "Config save"):
            self._session.add(config)
            await self._session.flush()
        return config

    async def activate(self, config_id: int) -> IdentificationThresholdConfig:
        """Make config_id the only active config.

        Raises:
            NotFoundError: If no config has that id.
            ConflictError: If a concurrent activation slipped past the lock.
        """
        async with savepoint(self._session, f"Config {config_id} activation"):
            await self._lock_activation()
            target = await self._session.get(
                IdentificationThresholdConfig, config_id, populate_existing=True
            )
            if target is None:
                raise NotFoundError("Threshold config", config_id)
            await self._make_only_active(target)

        logger.info("Activated threshold config %s (v%s)", target.id, target.model_version)
        return target

    async def publish(self, config: IdentificationThresholdConfig) -> IdentificationThresholdConfig:
        """Insert a new config and activate it in one savepoint.

        A failure at any step leaves neither the new row nor a changed
        active config behind.

        Raises:
            PersistenceError: If the insert or the swap fails.
        """
        async with savepoint(self._session, "Config publish"):
            await self._lock_activation()
            self._session.add(config)
            await self._session.flush()
            await self._make_only_active(config)

        logger.info("Published threshold config %s (v%s)", config.id, config.model_version)
        return config

    async def _lock_activation(self) -> None:
        await self._session.execute(select(func.pg_advisory_xact_lock(ACTIVATION_LOCK_KEY)))

    async def _make_only_active(self, target: IdentificationThresholdConfig) -> None:
        await self._session.execute(
            update(IdentificationThresholdConfig)
            .where(
                IdentificationThresholdConfig.is_active.is_(True),
                IdentificationThresholdConfig.id != target.id,
            )
            .values(is_active=False)
            .execution_options(synchronize_session="fetch")
        )
        target.is_active = True
        await self._session.flush()

    async def all_ordered_by_accuracy(self) -> list[IdentificationThresholdConfig]:
        stmt = select(IdentificationThresholdConfig).order_by(
            IdentificationThresholdConfig.accuracy.desc().nulls_last(),
            IdentificationThresholdConfig.id.desc(),
        )
        with store_errors("Config listing"):
            result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete(self, config_id: int) -> None:
        """Delete an inactive config.

        Raises:
            NotFoundError: If no config has that id.
            ConflictError: If it is the active config.
        """
        config = await self.get(config_id)
        if config is None:
            raise NotFoundError("Threshold config", config_id)
        if config.is_active:
            msg = f"Threshold config {config_id} is active and cannot be deleted"
            raise ConflictError(msg)
        async with savepoint(self._session, f"Config {config_id} delete"):
            await self._session.delete(config)
            await self._session.flush()
