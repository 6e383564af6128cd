"""Tests for the validation feedback loop."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import pytest

from product_sense.errors import PersistenceError, ValidationError
from product_sense.models.enums import NO_MATCH, CorrectionType, MatchType, ValidationSource
from product_sense.models.validation import ProductIdentificationValidation
from product_sense.services.feedback import (
    ValidationFeedbackLoop,
    derive_correction_type,
    normalize_match_type,
)


@pytest.fixture
def make_loop(validation_store, config_store):
    def _make(**kwargs) -> ValidationFeedbackLoop:
        return ValidationFeedbackLoop(validation_store, config_store, **kwargs)

    return _make


@pytest.fixture
def loop(make_loop) -> ValidationFeedbackLoop:
    return make_loop()


# ─────────────────────────────────────────────────────────────────────────────
# Classification helpers
# ─────────────────────────────────────────────────────────────────────────────


class TestDeriveCorrectionType:
    @pytest.mark.parametrize(
        ("was_correct", "suggested", "actual", "expected"),
        [
            (True, 5, 5, CorrectionType.CORRECT),
            (False, 5, None, CorrectionType.FALSE_POSITIVE),
            (False, None, 5, CorrectionType.FALSE_NEGATIVE),
            (False, 5, 6, CorrectionType.IMPROVED),
        ],
    )
    def test_classification(self, was_correct, suggested, actual, expected) -> None:
        assert derive_correction_type(was_correct, suggested, actual) == expected

    @pytest.mark.parametrize(
        ("was_correct", "suggested", "actual"),
        [(True, 5, 6), (False, 5, 5), (False, None, None)],
    )
    def test_contradictions_are_rejected(self, was_correct, suggested, actual) -> None:
        with pytest.raises(ValidationError):
            derive_correction_type(was_correct, suggested, actual)


class TestNormalizeMatchType:
    def test_values(self) -> None:
        assert normalize_match_type(None) == NO_MATCH
        assert normalize_match_type(MatchType.VISION_MATCH) == "vision_match"
        assert normalize_match_type(" Vector_Similarity ") == "vector_similarity"

    def test_unknown_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            normalize_match_type("telepathy")


# ─────────────────────────────────────────────────────────────────────────────
# Recording
# ─────────────────────────────────────────────────────────────────────────────


class TestRecording:
    async def test_record_correct(self, loop, validation_store) -> None:
        saved = await loop.record_correct(
            "ab" * 32,
            product_id=7,
            confidence=0.91,
            match_type=MatchType.VECTOR_SIMILARITY,
            similarity_score=0.91,
            validated_by=42,
            validation_source=ValidationSource.STOCK,
            related_stock_id=99,
        )

        assert saved.validation_id == 1
        assert saved.was_correct is True
        assert saved.correction_type == CorrectionType.CORRECT
        assert saved.suggested_product_id == saved.actual_product_id == 7
        assert saved.match_type == "vector_similarity"
        assert saved.validation_source == ValidationSource.STOCK
        assert saved.related_stock_id == 99
        assert validation_store.rows == [saved]

    async def test_record_false_negative_has_no_suggestion(self, loop) -> None:
        saved = await loop.record_false_negative("ab" * 32, actual_product_id=3)

        assert saved.suggested_product_id is None
        assert saved.confidence_score == 0.0
        assert saved.match_type == NO_MATCH
        assert saved.correction_type == CorrectionType.FALSE_NEGATIVE

    async def test_record_false_positive_and_improved(self, loop) -> None:
        fp = await loop.record_false_positive("ab" * 32, 3, 0.8, "brand_model")
        improved = await loop.record_improved("cd" * 32, 3, 4, 0.8, MatchType.TAG_CATEGORY)

        assert fp.actual_product_id is None
        assert fp.correction_type == CorrectionType.FALSE_POSITIVE
        assert improved.actual_product_id == 4
        assert improved.correction_type == CorrectionType.IMPROVED

    async def test_record_outcome_derives_type(self, loop) -> None:
        saved = await loop.record_outcome(
            "ab" * 32, was_correct=False, suggested_product_id=2, actual_product_id=None,
            confidence=0.8, match_type="vision_match",
        )

        assert saved.correction_type == CorrectionType.FALSE_POSITIVE

    async def test_raw_validation_gets_defaults(self, loop) -> None:
        validation = ProductIdentificationValidation(
            image_hash="ab" * 32,
            confidence_score=0.5,
            match_type="EXACT_HASH",
            was_correct=True,
            correction_type=CorrectionType.CORRECT,
        )

        saved = await loop.record_validation(validation)

        assert saved.validation_source == ValidationSource.MANUAL
        assert saved.match_type == "exact_hash"

    @pytest.mark.parametrize(
        ("image_hash", "confidence", "similarity"),
        [("", 0.5, None), ("   ", 0.5, None), ("ab", 1.2, None), ("ab", -0.1, None), ("ab", 0.5, 1.5)],
    )
    async def test_invalid_validations_are_rejected(
        self, loop, validation_store, image_hash, confidence, similarity
    ) -> None:
        with pytest.raises(ValidationError):
            await loop.record_correct(
                image_hash, 1, confidence, MatchType.BRAND_MODEL, similarity_score=similarity
            )
        assert validation_store.rows == []


# ─────────────────────────────────────────────────────────────────────────────
# Metrics and queries
# ─────────────────────────────────────────────────────────────────────────────


class TestMetrics:
    async def test_empty_log_has_zero_accuracy(self, loop) -> None:
        metrics = await loop.accuracy_metrics()

        assert metrics.total == 0
        assert metrics.accuracy == 0.0

    async def test_counts_and_accuracy(self, loop) -> None:
        for i in range(7):
            await loop.record_correct(f"ok{i}", i + 1, 0.9, MatchType.VECTOR_SIMILARITY)
        await loop.record_false_positive("fp0", 1, 0.8, MatchType.VECTOR_SIMILARITY)
        await loop.record_false_positive("fp1", 1, 0.8, MatchType.VECTOR_SIMILARITY)
        await loop.record_false_negative("fn0", 1)

        metrics = await loop.accuracy_metrics()

        assert (metrics.total, metrics.correct) == (10, 7)
        assert (metrics.false_positives, metrics.false_negatives) == (2, 1)
        assert metrics.accuracy == pytest.approx(0.70)


class TestQueries:
    async def test_recent_is_newest_first(self, loop) -> None:
        for i in range(3):
            await loop.record_correct(f"h{i}", 1, 0.9, MatchType.BRAND_MODEL)

        recent = await loop.recent(limit=2)

        assert [v.image_hash for v in recent] == ["h2", "h1"]

    async def test_recent_requires_positive_limit(self, loop) -> None:
        with pytest.raises(ValidationError):
            await loop.recent(limit=0)

    async def test_filters(self, loop) -> None:
        await loop.record_correct("a", 1, 0.9, MatchType.BRAND_MODEL)
        await loop.record_false_negative("b", 2, validation_source=ValidationSource.SALE)

        assert [v.image_hash for v in await loop.by_match_type(None)] == ["b"]
        assert [v.image_hash for v in await loop.by_match_type("brand_model")] == ["a"]
        assert [v.image_hash for v in await loop.by_source(ValidationSource.SALE)] == ["b"]

    async def test_date_range_is_inclusive(self, loop) -> None:
        first = await loop.record_correct("a", 1, 0.9, MatchType.BRAND_MODEL)
        second = await loop.record_correct("b", 1, 0.9, MatchType.BRAND_MODEL)
        await loop.record_correct("c", 1, 0.9, MatchType.BRAND_MODEL)

        found = await loop.by_date_range(first.validated_at, second.validated_at)

        assert [v.image_hash for v in found] == ["a", "b"]

    async def test_reversed_date_range_is_rejected(self, loop) -> None:
        saved = await loop.record_correct("a", 1, 0.9, MatchType.BRAND_MODEL)

        with pytest.raises(ValidationError):
            await loop.by_date_range(saved.validated_at, saved.validated_at - timedelta(days=1))


# ─────────────────────────────────────────────────────────────────────────────
# Retraining
# ─────────────────────────────────────────────────────────────────────────────


class TestRetraining:
    async def test_not_due_below_floor(self, make_loop, config_store) -> None:
        loop = make_loop(min_validations=5)
        for i in range(4):
            await loop.record_correct(f"h{i}", 1, 0.9, MatchType.BRAND_MODEL)

        assert await loop.check_and_retrain() is None
        assert all(c.model_version == "1.0" for c in config_store.configs.values())

    async def test_retrains_at_floor(self, make_loop, config_store, active_config) -> None:
        loop = make_loop(min_validations=5)
        for i in range(5):
            await loop.record_correct(f"h{i}", 1, 0.9, MatchType.BRAND_MODEL)

        active = await config_store.active()
        assert active.model_version == "1.1"
        assert active.id != active_config.id
        assert active_config.is_active is False
        assert active.training_samples_count == 5
        assert active.accuracy == 1.0
        assert active.last_training_at is not None
        assert sum(c.is_active for c in config_store.configs.values()) == 1

    async def test_no_second_retrain_until_new_validations(
        self, make_loop, config_store, active_config
    ) -> None:
        loop = make_loop(min_validations=2)
        for i in range(2):
            await loop.record_correct(f"h{i}", 1, 0.9, MatchType.BRAND_MODEL)

        assert await loop.check_and_retrain() is None
        assert (await config_store.active()).model_version == "1.1"

    async def test_false_positives_tighten_tier(self, make_loop, config_store, active_config) -> None:
        loop = make_loop(min_validations=10)
        for i in range(5):
            await loop.record_correct(f"ok{i}", 1, 0.8, MatchType.VECTOR_SIMILARITY)
            await loop.record_false_positive(f"fp{i}", 1, 0.8, MatchType.VECTOR_SIMILARITY)

        active = await config_store.active()
        assert active.vector_similarity_min_confidence == pytest.approx(0.77)
        assert active.brand_model_min_confidence == active_config.brand_model_min_confidence

    async def test_false_negatives_loosen_tier(self, make_loop, config_store, active_config) -> None:
        loop = make_loop(min_validations=10)
        for i in range(6):
            await loop.record_correct(f"ok{i}", 1, 0.8, MatchType.VECTOR_SIMILARITY)
        for i in range(4):
            await loop.record_outcome(
                f"fn{i}",
                was_correct=False,
                suggested_product_id=None,
                actual_product_id=1,
                match_type=MatchType.VECTOR_SIMILARITY,
            )

        active = await config_store.active()
        assert active.vector_similarity_min_confidence == pytest.approx(0.73)

    async def test_missed_matches_loosen_every_tuned_tier(
        self, make_loop, config_store, active_config
    ) -> None:
        loop = make_loop(min_validations=10)
        for i in range(10):
            await loop.record_false_negative(f"fn{i}", actual_product_id=1)

        active = await config_store.active()
        assert active.model_version == "1.1"
        assert active.false_negatives == 10
        assert active.brand_model_min_confidence == pytest.approx(0.83)
        assert active.vision_match_min_confidence == pytest.approx(0.58)
        assert active.vector_similarity_min_confidence == pytest.approx(0.73)
        assert active.tag_category_min_confidence == pytest.approx(0.58)
        assert active.barcode_min_confidence == active_config.barcode_min_confidence
        assert active.hash_min_confidence == active_config.hash_min_confidence

    async def test_false_negative_charged_to_its_tier(
        self, make_loop, config_store, active_config
    ) -> None:
        loop = make_loop(min_validations=10)
        for i in range(10):
            await loop.record_false_negative(
                f"fn{i}", actual_product_id=1, match_type=MatchType.VISION_MATCH
            )

        active = await config_store.active()
        assert active.vision_match_min_confidence == pytest.approx(0.58)
        assert active.brand_model_min_confidence == active_config.brand_model_min_confidence
        assert active.vector_similarity_min_confidence == active_config.vector_similarity_min_confidence
        assert active.tag_category_min_confidence == active_config.tag_category_min_confidence

    async def test_high_accuracy_loosens_tier(self, make_loop, config_store, active_config) -> None:
        loop = make_loop(min_validations=10)
        for i in range(10):
            await loop.record_correct(f"ok{i}", 1, 0.9, MatchType.BRAND_MODEL)

        active = await config_store.active()
        assert active.brand_model_min_confidence == pytest.approx(0.83)

    async def test_concurrent_retraining_leaves_one_active(
        self, make_loop, config_store, active_config
    ) -> None:
        loop = make_loop(min_validations=1000)
        await loop.record_correct("h", 1, 0.9, MatchType.BRAND_MODEL)

        await asyncio.gather(loop.trigger_retraining(), loop.trigger_retraining())

        assert len(config_store.configs) == 3
        assert sum(c.is_active for c in config_store.configs.values()) == 1

    async def test_failed_retrain_keeps_validation(
        self, make_loop, validation_store, monkeypatch, caplog
    ) -> None:
        async def broken_recent(limit: int = 50):
            msg = "store went away"
            raise PersistenceError(msg)

        monkeypatch.setattr(validation_store, "recent", broken_recent)
        loop = make_loop(min_validations=1)

        with caplog.at_level(logging.ERROR, logger="product_sense.services.feedback"):
            saved = await loop.record_correct("h", 1, 0.9, MatchType.BRAND_MODEL)

        assert validation_store.rows == [saved]
        assert "Retraining after validation" in caplog.text

    async def test_failed_publish_leaves_no_new_config(
        self, make_loop, validation_store, config_store, active_config
    ) -> None:
        config_store.failures["publish"] = PersistenceError("activation lock timeout")
        loop = make_loop(min_validations=1)

        saved = await loop.record_correct("h", 1, 0.9, MatchType.BRAND_MODEL)

        assert validation_store.rows == [saved]
        assert list(config_store.configs) == [active_config.id]
        assert (await config_store.active()).model_version == "1.0"

    async def test_configs_by_accuracy(self, make_loop, config_store, active_config) -> None:
        loop = make_loop(min_validations=2)
        await loop.record_correct("a", 1, 0.9, MatchType.BRAND_MODEL)
        await loop.record_false_positive("b", 1, 0.9, MatchType.BRAND_MODEL)

        ordered = await loop.configs_by_accuracy()

        assert [c.model_version for c in ordered] == ["1.1", "1.0"]
        assert ordered[0].accuracy == pytest.approx(0.5)
