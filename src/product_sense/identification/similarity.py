"""Similarity primitives used by the matching tiers.

Kept free of storage concerns so the in-memory lookup and the vision-field
scoring share one definition of "similar".
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from product_sense.config import settings


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors, clipped to [0, 1].

    Opposed vectors count as unrelated (0.0), not as negative evidence.
    This is 1 - pgvector cosine_distance, clipped.
    """
    if len(a) != len(b) or len(a) == 0:
        return 0.0

    a_np = np.asarray(a, dtype=np.float64)
    b_np = np.asarray(b, dtype=np.float64)

    norm_a = np.linalg.norm(a_np)
    norm_b = np.linalg.norm(b_np)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    sim = float(np.dot(a_np, b_np) / (norm_a * norm_b))
    return min(1.0, max(0.0, sim))


def similarity_from_distance(distance: float) -> float:
    """pgvector cosine distance (0..2) to similarity in [0, 1]."""
    return min(1.0, max(0.0, 1.0 - distance))


def list_overlap(
    a: Sequence[str] | None,
    b: Sequence[str] | None,
    *,
    empty_agreement: float = 0.5,
) -> tuple[float, list[str]]:
    """Case-insensitive overlap ratio of two string lists.

    Returns (ratio, matching items). The ratio is matches / max(len(a), len(b)).
    Exactly one side empty is no agreement (0.0). Both sides empty carry no
    evidence either way and score empty_agreement.
    """
    left = {s.strip().lower() for s in a or [] if s and s.strip()}
    right = {s.strip().lower() for s in b or [] if s and s.strip()}

    if not left and not right:
        return empty_agreement, []
    if not left or not right:
        return 0.0, []

    matching = sorted(left & right)
    return len(matching) / max(len(left), len(right)), matching


@dataclass
class VisionScore:
    """Breakdown of a vision-field tier score."""

    score: float
    base: float
    logos_bonus: float
    objects_bonus: float
    matching_logos: list[str]
    matching_objects: list[str]


def vision_field_score(
    image_logos: Sequence[str] | None,
    product_logos: Sequence[str] | None,
    image_objects: Sequence[str] | None,
    product_objects: Sequence[str] | None,
) -> VisionScore:
    """Score a product that already agrees on the vision fields.

    score = base + max_logos_bonus * logo_overlap + max_objects_bonus * object_overlap,
    capped at 1.0. With the default weights this spans 0.60 to 1.00 and only
    ever grows as more logos/objects agree. A product and image that both
    show no logos sit halfway on the logo bonus.
    """
    logo_ratio, matching_logos = list_overlap(image_logos, product_logos)
    object_ratio, matching_objects = list_overlap(image_objects, product_objects)

    base = settings.vision_base_similarity
    logos_bonus = settings.vision_max_logos_bonus * logo_ratio
    objects_bonus = settings.vision_max_objects_bonus * object_ratio

    return VisionScore(
        score=round(min(1.0, base + logos_bonus + objects_bonus), 4),
        base=base,
        logos_bonus=round(logos_bonus, 4),
        objects_bonus=round(objects_bonus, 4),
        matching_logos=matching_logos,
        matching_objects=matching_objects,
    )
