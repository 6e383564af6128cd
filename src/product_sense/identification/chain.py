"""MatchStrategyChain: ordered tier evaluation with short-circuiting.

Tiers run sequentially because each one's decision to stop depends on the
previous tier's outcome. Within a tier, candidates are deduplicated by
product and ranked by confidence (desc) then product id (asc).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from product_sense.errors import TierLookupError
from product_sense.extraction.base import RecognitionSignals
from product_sense.identification.ports import ProductLookup
from product_sense.identification.schemas import IdentificationMatch
from product_sense.identification.tiers import TIER_ORDER, MatchTier
from product_sense.models.enums import MatchType
from product_sense.models.threshold_config import IdentificationThresholdConfig

logger = logging.getLogger(__name__)


@dataclass
class ChainResult:
    """Outcome of running the chain over one set of signals."""

    matches: list[IdentificationMatch]
    """Ranked candidates from the winning tier (empty if no tier qualified)."""

    winning_tier: MatchType | None = None

    near_misses: list[IdentificationMatch] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    """Below-floor candidates from tiers that did not qualify, ranked."""

    tiers_attempted: list[MatchType] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    tiers_degraded: list[MatchType] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    """Tiers whose lookup failed softly and counted as "found nothing"."""


def rank_matches(matches: list[IdentificationMatch]) -> list[IdentificationMatch]:
    """Deduplicate by product (keep the most confident) and sort deterministically."""
    best: dict[int, IdentificationMatch] = {}
    for match in matches:
        key = match.product.id
        current = best.get(key)
        if current is None or match.confidence > current.confidence:
            best[key] = match
    return sorted(best.values(), key=lambda m: (-m.confidence, m.product.id))


class MatchStrategyChain:
    """Try matching tiers in strict priority order.

    Usage:
        chain = MatchStrategyChain(lookup)
        result = await chain.run(signals, config)
        if result.matches:
            best = result.matches[0]
    """

    def __init__(
        self,
        lookup: ProductLookup,
        *,
        tiers: tuple[MatchTier, ...] = TIER_ORDER,
    ) -> None:
        """Initialize the chain.

        Args:
            lookup: Product finders the tiers query.
            tiers: Tier sequence; defaults to the fixed production order.
        """
        self._lookup = lookup
        self._tiers = tiers

    async def run(
        self,
        signals: RecognitionSignals,
        config: IdentificationThresholdConfig,
    ) -> ChainResult:
        """Run tiers until one yields a qualifying candidate.

        Barcode and hash tiers stop the chain on any hit. Every other tier
        stops it only when at least one candidate reaches that tier's
        minimum confidence. No usable signal yields an empty result.

        Raises:
            PersistenceError: If the store is unavailable (aborts the chain).
        """
        result = ChainResult(matches=[])
        near_misses: list[IdentificationMatch] = []

        for tier in self._tiers:
            if not tier.applies(signals):
                continue

            result.tiers_attempted.append(tier.match_type)
            try:
                found = await tier.find(signals, self._lookup, config)
            except TierLookupError as e:
                logger.warning("Tier %s degraded to no result: %s", tier.match_type.value, e)
                result.tiers_degraded.append(tier.match_type)
                continue

            if not found:
                logger.debug("Tier %s: no candidates", tier.match_type.value)
                continue

            ranked = rank_matches(found)

            if tier.short_circuits:
                logger.info(
                    "Tier %s hit: product %s (%.2f)",
                    tier.match_type.value,
                    ranked[0].product.id,
                    ranked[0].confidence,
                )
                result.matches = ranked
                result.winning_tier = tier.match_type
                return result

            floor = config.min_confidence_for(tier.match_type)
            qualifying = [m for m in ranked if m.confidence >= floor]
            if qualifying:
                logger.info(
                    "Tier %s hit: %d candidate(s), best product %s (%.2f)",
                    tier.match_type.value,
                    len(qualifying),
                    qualifying[0].product.id,
                    qualifying[0].confidence,
                )
                result.matches = qualifying
                result.winning_tier = tier.match_type
                result.near_misses = rank_matches(near_misses)
                return result

            logger.debug(
                "Tier %s: best %.2f below floor %.2f",
                tier.match_type.value,
                ranked[0].confidence,
                floor,
            )
            near_misses.extend(ranked)

        result.near_misses = rank_matches(near_misses)
        return result
