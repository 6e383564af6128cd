"""ConfidenceResolver: threshold policy over the chain's candidates.

Decision order:
1. No candidates          → NEW_PRODUCT_CREATED (or ERROR when creation is not allowed)
2. None reaches the manual-validation floor → as if empty, unless the
   caller asks for a best-effort suggestion (PARTIAL_MATCH)
3. Two qualifying candidates within ambiguity_margin → MULTIPLE_MATCHES
4. Exactly one candidate at/above its auto-approve cutoff → IDENTIFIED
5. Otherwise              → PARTIAL_MATCH, top candidate suggested

Anything unexpected while scoring yields ERROR with the cause in details.
It is never turned into a match.
"""

from __future__ import annotations

import logging

from product_sense.config import settings
from product_sense.identification.schemas import IdentificationMatch, Resolution
from product_sense.models.enums import IdentificationStatus
from product_sense.models.threshold_config import IdentificationThresholdConfig

logger = logging.getLogger(__name__)


class ConfidenceResolver:
    """Turn ranked candidates plus the active config into a terminal status.

    Usage:
        resolver = ConfidenceResolver()
        resolution = resolver.resolve(chain_result.matches, config)
    """

    def __init__(self, *, ambiguity_margin: float | None = None) -> None:
        """Initialize the resolver.

        Args:
            ambiguity_margin: Max confidence gap between the top two qualifying
                candidates that still counts as ambiguous (default from config).
        """
        self._margin = ambiguity_margin if ambiguity_margin is not None else settings.ambiguity_margin

    def resolve(
        self,
        candidates: list[IdentificationMatch],
        config: IdentificationThresholdConfig,
        *,
        allow_create: bool = True,
        surface_best_effort: bool = False,
        near_misses: list[IdentificationMatch] | None = None,
    ) -> Resolution:
        """Decide the identification status.

        Args:
            candidates: Ranked candidates (best first) from the winning tier.
            config: Active threshold config.
            allow_create: Whether "nothing matched" may become a new product.
            surface_best_effort: Offer the best below-floor candidate for manual
                disambiguation instead of falling through to a new product.
            near_misses: Below-floor candidates from tiers that did not qualify.

        Returns:
            Resolution with status, suggested match and alternatives.
        """
        try:
            return self._resolve(
                candidates,
                config,
                allow_create=allow_create,
                surface_best_effort=surface_best_effort,
                near_misses=near_misses or [],
            )
        except Exception as e:
            logger.exception("Confidence resolution failed")
            return Resolution(
                status=IdentificationStatus.ERROR,
                best=None,
                alternatives=[],
                requires_validation=True,
                confidence=0.0,
                details=f"Confidence resolution failed: {e}",
            )

    def _resolve(
        self,
        candidates: list[IdentificationMatch],
        config: IdentificationThresholdConfig,
        *,
        allow_create: bool,
        surface_best_effort: bool,
        near_misses: list[IdentificationMatch],
    ) -> Resolution:
        ranked = sorted(candidates, key=lambda m: (-m.confidence, m.product.id))
        for match in ranked:
            if not 0.0 <= match.confidence <= 1.0:
                msg = f"confidence {match.confidence} for product {match.product.id} outside [0, 1]"
                raise ValueError(msg)

        floor = config.manual_validation_threshold
        qualifying = [m for m in ranked if m.confidence >= floor]

        if not qualifying:
            below = sorted([*ranked, *near_misses], key=lambda m: (-m.confidence, m.product.id))
            if surface_best_effort and below:
                best, *rest = below
                return Resolution(
                    status=IdentificationStatus.PARTIAL_MATCH,
                    best=best,
                    alternatives=rest,
                    requires_validation=True,
                    confidence=best.confidence,
                    details=(
                        f"Best-effort suggestion at {best.confidence:.0%} "
                        f"(below validation floor {floor:.0%})"
                    ),
                )
            return self._no_match(allow_create, had_candidates=bool(ranked))

        best = qualifying[0]

        if len(qualifying) > 1 and best.confidence - qualifying[1].confidence < self._margin:
            logger.info(
                "Ambiguous: products %s and %s at %.2f / %.2f",
                best.product.id,
                qualifying[1].product.id,
                best.confidence,
                qualifying[1].confidence,
            )
            return Resolution(
                status=IdentificationStatus.MULTIPLE_MATCHES,
                best=best,
                alternatives=ranked[1:],
                requires_validation=True,
                confidence=best.confidence,
                details=(
                    f"{len(qualifying)} candidates within {self._margin:.0%} of each other; "
                    "choose one"
                ),
            )

        auto_approved = [m for m in qualifying if m.confidence >= config.auto_approve_for(m.match_type)]
        if len(auto_approved) == 1 and auto_approved[0] is best:
            return Resolution(
                status=IdentificationStatus.IDENTIFIED,
                best=best,
                alternatives=ranked[1:],
                requires_validation=False,
                confidence=best.confidence,
                details=f"{best.details} ({best.confidence:.0%})",
            )

        return Resolution(
            status=IdentificationStatus.PARTIAL_MATCH,
            best=best,
            alternatives=ranked[1:],
            requires_validation=True,
            confidence=best.confidence,
            details=f"Probable match, please confirm: {best.details} ({best.confidence:.0%})",
        )

    def _no_match(self, allow_create: bool, *, had_candidates: bool) -> Resolution:
        reason = "all candidates below validation floor" if had_candidates else "no candidates"
        if not allow_create:
            return Resolution(
                status=IdentificationStatus.ERROR,
                best=None,
                alternatives=[],
                requires_validation=True,
                confidence=0.0,
                details=f"No matching product ({reason})",
            )
        return Resolution(
            status=IdentificationStatus.NEW_PRODUCT_CREATED,
            best=None,
            alternatives=[],
            requires_validation=False,
            confidence=0.0,
            details=f"New product ({reason})",
        )
