"""Loading the active threshold config."""

from __future__ import annotations

import logging

from product_sense.errors import ConflictError
from product_sense.identification.ports import ThresholdConfigStore
from product_sense.models.threshold_config import IdentificationThresholdConfig

logger = logging.getLogger(__name__)


async def load_active_config(store: ThresholdConfigStore) -> IdentificationThresholdConfig:
    """Return the active config, bootstrapping the defaults on first use.

    Two callers bootstrapping at once both publish a default row. The store
    serializes activation, so the later one wins and exactly one config
    ends up active.
    """
    config = await store.active()
    if config is not None:
        return config

    logger.info("No active threshold config, bootstrapping defaults")
    try:
        return await store.publish(IdentificationThresholdConfig.bootstrap())
    except ConflictError:
        winner = await store.active()
        if winner is None:
            raise
        return winner
