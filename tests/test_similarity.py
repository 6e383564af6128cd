"""Tests for similarity primitives."""

import pytest

from product_sense.identification.similarity import (
    cosine_similarity,
    list_overlap,
    similarity_from_distance,
    vision_field_score,
)


class TestCosineSimilarity:
    def test_identical(self) -> None:
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal(self) -> None:
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposed_clips_to_zero(self) -> None:
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == 0.0

    @pytest.mark.parametrize(("a", "b"), [([1.0], [1.0, 0.0]), ([], []), ([0.0, 0.0], [1.0, 0.0])])
    def test_degenerate_inputs(self, a: list[float], b: list[float]) -> None:
        assert cosine_similarity(a, b) == 0.0


def test_similarity_from_distance() -> None:
    assert similarity_from_distance(0.0) == 1.0
    assert similarity_from_distance(0.25) == pytest.approx(0.75)
    assert similarity_from_distance(1.5) == 0.0


class TestListOverlap:
    def test_case_insensitive(self) -> None:
        ratio, matching = list_overlap(["Acme", "Fizz"], ["acme", "other", "third"])

        assert ratio == pytest.approx(1 / 3)
        assert matching == ["acme"]

    def test_both_empty_is_neutral(self) -> None:
        assert list_overlap([], None) == (0.5, [])

    def test_one_side_empty_is_no_agreement(self) -> None:
        assert list_overlap(["acme"], []) == (0.0, [])


class TestVisionFieldScore:
    def test_full_agreement_caps_at_one(self) -> None:
        score = vision_field_score(["acme"], ["ACME"], ["bottle"], ["bottle"])

        assert score.score == 1.0
        assert score.matching_logos == ["acme"]

    def test_no_overlap_is_base(self) -> None:
        score = vision_field_score(["acme"], ["other"], ["can"], ["box"])

        assert score.score == pytest.approx(0.60)

    def test_both_sides_bare(self) -> None:
        assert vision_field_score([], [], [], []).score == pytest.approx(0.80)

    def test_score_grows_with_overlap(self) -> None:
        partial = vision_field_score(["a", "b"], ["a", "c"], [], ["x"])
        full = vision_field_score(["a", "b"], ["a", "b"], [], ["x"])

        assert 0.60 < partial.score < full.score
