"""The six matching tiers.

Each tier is plain data: a match type, a predicate saying whether the
signals allow it to run, and an async finder that turns signals into
candidates. No tier holds state. The chain walks TIER_ORDER front to back.

Tier order (most certain and cheapest first):
1. EXACT_BARCODE   - literal barcode lookup, fixed confidence
2. EXACT_HASH      - same image bytes seen before, confidence 1.0
3. BRAND_MODEL     - exact (brand, model); only a unique hit counts
4. VISION_MATCH    - (brand?, model?, category?) agreement scored 0.60-1.00
5. VECTOR_SIMILARITY - single nearest embedding, confidence = similarity
6. TAG_CATEGORY    - loose usage-tag + category fallback, fixed confidence
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from product_sense.config import settings
from product_sense.extraction.base import RecognitionSignals
from product_sense.identification.ports import ProductLookup
from product_sense.identification.schemas import IdentificationMatch
from product_sense.identification.similarity import list_overlap, vision_field_score
from product_sense.models.enums import MatchType
from product_sense.models.threshold_config import IdentificationThresholdConfig

logger = logging.getLogger(__name__)

TierFinder = Callable[
    [RecognitionSignals, ProductLookup, IdentificationThresholdConfig],
    Awaitable[list[IdentificationMatch]],
]


@dataclass(frozen=True)
class MatchTier:
    """One matching strategy."""

    match_type: MatchType
    applies: Callable[[RecognitionSignals], bool]
    find: TierFinder
    short_circuits: bool = False
    """Certainty tiers win on any hit, regardless of thresholds."""


async def _find_by_barcode(
    signals: RecognitionSignals,
    lookup: ProductLookup,
    config: IdentificationThresholdConfig,
) -> list[IdentificationMatch]:
    assert signals.barcode is not None
    product = await lookup.by_barcode(signals.barcode.data)
    if product is None:
        return []
    return [
        IdentificationMatch(
            product=product,
            confidence=settings.tier_confidence_barcode,
            match_type=MatchType.EXACT_BARCODE,
            details=f"Barcode {signals.barcode.data} matches",
            metadata={"barcode": signals.barcode.data, "barcode_format": signals.barcode.format},
        )
    ]


async def _find_by_hash(
    signals: RecognitionSignals,
    lookup: ProductLookup,
    config: IdentificationThresholdConfig,
) -> list[IdentificationMatch]:
    assert signals.image_hash is not None
    product = await lookup.by_image_hash(signals.image_hash)
    if product is None:
        return []
    return [
        IdentificationMatch(
            product=product,
            confidence=settings.tier_confidence_hash,
            match_type=MatchType.EXACT_HASH,
            details="Identical image seen before",
            similarity=1.0,
            metadata={"image_hash": signals.image_hash},
        )
    ]


async def _find_by_brand_model(
    signals: RecognitionSignals,
    lookup: ProductLookup,
    config: IdentificationThresholdConfig,
) -> list[IdentificationMatch]:
    products = await lookup.by_exact_fields(signals.brand, signals.model, None)
    if len(products) != 1:
        if products:
            # Several catalog entries share brand+model: let the vision tier disambiguate
            logger.debug(
                "brand_model: %d products for %s/%s, deferring", len(products), signals.brand, signals.model
            )
        return []
    return [
        IdentificationMatch(
            product=products[0],
            confidence=settings.tier_confidence_brand_model,
            match_type=MatchType.BRAND_MODEL,
            details=f"Brand '{signals.brand}' and model '{signals.model}' match",
            metadata={"brand": signals.brand, "model": signals.model},
        )
    ]


async def _find_by_vision_fields(
    signals: RecognitionSignals,
    lookup: ProductLookup,
    config: IdentificationThresholdConfig,
) -> list[IdentificationMatch]:
    products = await lookup.by_exact_fields(signals.brand, signals.model, signals.inferred_category)

    matches: list[IdentificationMatch] = []
    for product in products:
        score = vision_field_score(signals.logos, product.logos, signals.objects, product.objects)
        _, shared_tags = list_overlap(
            [*signals.inferred_usage_tags, *signals.image_tags],
            [*(product.inferred_usage_tags or []), *(product.image_tags or [])],
        )
        parts = [f"base {score.base:.0%}"]
        if score.logos_bonus:
            parts.append(f"logos +{score.logos_bonus:.1%}")
        if score.objects_bonus:
            parts.append(f"objects +{score.objects_bonus:.1%}")
        matches.append(
            IdentificationMatch(
                product=product,
                confidence=score.score,
                match_type=MatchType.VISION_MATCH,
                details="Vision fields match (" + ", ".join(parts) + ")",
                similarity=score.score,
                metadata={
                    "match_method": "vision_fields",
                    "base_similarity": score.base,
                    "logos_bonus": score.logos_bonus,
                    "objects_bonus": score.objects_bonus,
                    "matching_logos": score.matching_logos,
                    "matching_objects": score.matching_objects,
                    "shared_tags": shared_tags,
                },
            )
        )
    return matches


async def _find_by_vector(
    signals: RecognitionSignals,
    lookup: ProductLookup,
    config: IdentificationThresholdConfig,
) -> list[IdentificationMatch]:
    assert signals.embedding is not None
    found = await lookup.by_vector_similarity(
        signals.embedding,
        config.vector_similarity_min_confidence,
        embedding_model=signals.embedding_model,
    )
    if found is None:
        return []
    product, similarity = found
    return [
        IdentificationMatch(
            product=product,
            confidence=similarity,
            match_type=MatchType.VECTOR_SIMILARITY,
            details=f"Embedding similarity {similarity:.1%}",
            similarity=similarity,
            metadata={"match_method": "embedding", "embedding_model": signals.embedding_model},
        )
    ]


async def _find_by_tags(
    signals: RecognitionSignals,
    lookup: ProductLookup,
    config: IdentificationThresholdConfig,
) -> list[IdentificationMatch]:
    products = await lookup.by_tags_and_category(signals.inferred_usage_tags, signals.inferred_category)
    return [
        IdentificationMatch(
            product=product,
            confidence=settings.tier_confidence_tag_category,
            match_type=MatchType.TAG_CATEGORY,
            details="Usage tags and category agree",
            metadata={"tags": list(signals.inferred_usage_tags), "category": signals.inferred_category},
        )
        for product in products
    ]


TIER_ORDER: tuple[MatchTier, ...] = (
    MatchTier(
        match_type=MatchType.EXACT_BARCODE,
        applies=lambda s: s.barcode is not None and bool(s.barcode.data),
        find=_find_by_barcode,
        short_circuits=True,
    ),
    MatchTier(
        match_type=MatchType.EXACT_HASH,
        applies=lambda s: bool(s.image_hash),
        find=_find_by_hash,
        short_circuits=True,
    ),
    MatchTier(
        match_type=MatchType.BRAND_MODEL,
        applies=lambda s: bool(s.brand) and bool(s.model),
        find=_find_by_brand_model,
    ),
    MatchTier(
        match_type=MatchType.VISION_MATCH,
        applies=lambda s: bool(s.brand or s.model),
        find=_find_by_vision_fields,
    ),
    MatchTier(
        match_type=MatchType.VECTOR_SIMILARITY,
        applies=lambda s: bool(s.embedding),
        find=_find_by_vector,
    ),
    MatchTier(
        match_type=MatchType.TAG_CATEGORY,
        applies=lambda s: bool(s.inferred_usage_tags),
        find=_find_by_tags,
    ),
)
