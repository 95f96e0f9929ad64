"""Unit tests for similarity primitives and ranking formulas.

Tests cover:
- Cosine similarity symmetry, self-similarity and zero vectors
- Query vector validation
- Hybrid score boundaries
- Recommendation, effectiveness and association formulas
- Co-occurrence counting over usage records
- Deterministic tie-breaking
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from contextlens.errors import QueryValidationError
from contextlens.scoring.ranking import (
    association_strength,
    average_rating,
    co_occurrence_counts,
    effectiveness_score,
    hybrid_score,
    rank,
    recent_context_ids,
    recommendation_score,
)
from contextlens.scoring.similarity import (
    cosine_distance,
    cosine_similarities,
    cosine_similarity,
    validate_vector,
)

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@dataclass
class Use:
    user_id: str
    template_id: str
    context_id: str
    rating: float | None = None
    created_at: datetime = T0


class TestCosineSimilarity:
    """Test cosine similarity and distance."""

    def test_self_similarity_is_one(self) -> None:
        rng = np.random.default_rng(7)
        for _ in range(20):
            v = rng.normal(size=16)
            assert cosine_similarity(v, v) == pytest.approx(1.0)

    def test_symmetry(self) -> None:
        rng = np.random.default_rng(11)
        for _ in range(20):
            a, b = rng.normal(size=8), rng.normal(size=8)
            assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_orthogonal_and_opposite(self) -> None:
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector_scores_zero(self) -> None:
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0

    def test_scale_invariant(self) -> None:
        assert cosine_similarity([1.0, 2.0], [10.0, 20.0]) == pytest.approx(1.0)

    def test_distance(self) -> None:
        assert cosine_distance([1.0, 0.0], [0.0, 1.0]) == pytest.approx(1.0)
        assert cosine_distance([1.0, 1.0], [2.0, 2.0]) == pytest.approx(0.0)

    def test_shape_mismatch(self) -> None:
        with pytest.raises(QueryValidationError):
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])

    def test_matrix_form_matches_pairwise(self) -> None:
        rng = np.random.default_rng(3)
        query = rng.normal(size=6)
        matrix = rng.normal(size=(5, 6))
        matrix[2] = 0.0

        sims = cosine_similarities(query, matrix)

        assert sims.shape == (5,)
        for i, row in enumerate(matrix):
            assert sims[i] == pytest.approx(cosine_similarity(query, row))
        assert sims[2] == 0.0

    def test_matrix_form_empty(self) -> None:
        assert cosine_similarities([1.0, 2.0], np.empty((0, 2))).shape == (0,)


class TestValidateVector:
    """Test query vector validation."""

    def test_accepts_list(self) -> None:
        arr = validate_vector([1, 2, 3], dimension=3)
        assert arr.dtype == np.float64
        assert arr.tolist() == [1.0, 2.0, 3.0]

    @pytest.mark.parametrize(
        "vector",
        [[], [[1.0, 2.0]], [1.0, float("nan")], [float("inf"), 0.0], ["a", "b"]],
    )
    def test_rejects_malformed(self, vector) -> None:
        with pytest.raises(QueryValidationError):
            validate_vector(vector)

    def test_rejects_wrong_dimension(self) -> None:
        with pytest.raises(QueryValidationError, match="expected 4"):
            validate_vector([1.0, 2.0], dimension=4)


class TestHybridScore:
    """Test the hybrid blend."""

    @pytest.mark.parametrize("text,semantic", [(0.3, 0.9), (0.0, 0.5), (0.8, 0.1)])
    def test_weight_zero_is_pure_text(self, text, semantic) -> None:
        assert hybrid_score(text, semantic, 0.0) == text

    @pytest.mark.parametrize("text,semantic", [(0.3, 0.9), (0.0, 0.5), (0.8, 0.1)])
    def test_weight_one_is_pure_semantic(self, text, semantic) -> None:
        assert hybrid_score(text, semantic, 1.0) == semantic

    def test_blend(self) -> None:
        assert hybrid_score(0.5, 0.9, 0.7) == pytest.approx(0.5 * 0.3 + 0.9 * 0.7)

    def test_missing_components_count_as_zero(self) -> None:
        assert hybrid_score(0.4, None, 0.5) == pytest.approx(0.2)
        assert hybrid_score(None, 0.6, 0.5) == pytest.approx(0.3)

    @pytest.mark.parametrize("weight", [-0.1, 1.01])
    def test_weight_out_of_range(self, weight) -> None:
        with pytest.raises(QueryValidationError):
            hybrid_score(0.5, 0.5, weight)


class TestFormulas:
    """Test the fixed scoring formulas."""

    def test_recommendation_score(self) -> None:
        score = recommendation_score(
            co_occurrence_count=3, semantic_similarity=0.5, usage_count=10, avg_rating=4.0
        )
        assert score == pytest.approx(3 * 0.4 + 0.5 * 30 + 10 * 0.2 + 4.0 * 2)

    def test_recommendation_caps_usage(self) -> None:
        capped = recommendation_score(0, None, 1000, 0.0)
        assert capped == pytest.approx(100 * 0.2)

    def test_effectiveness_score(self) -> None:
        score = effectiveness_score(total_uses=10, avg_rating=4.5, unique_templates=3, unique_users=2)
        assert score == pytest.approx(10 * 0.3 + 4.5 * 20 + 3 * 0.2 + 2 * 0.1)

    def test_effectiveness_caps_uses(self) -> None:
        assert effectiveness_score(500, 0.0, 0, 0) == pytest.approx(100 * 0.3)

    def test_association_strength(self) -> None:
        assert association_strength(3, 4) == pytest.approx(0.75)
        assert association_strength(2, 0) == pytest.approx(2.0)

    def test_average_rating_ignores_null(self) -> None:
        assert average_rating([4.0, None, 2.0]) == pytest.approx(3.0)
        assert average_rating([None, None]) == 0.0
        assert average_rating([]) == 0.0


class TestUsageAggregation:
    """Test recent-context selection and co-occurrence counting."""

    def test_recent_context_ids_newest_first_and_distinct(self) -> None:
        usages = [
            Use("u1", "t1", "a", created_at=T0),
            Use("u1", "t1", "b", created_at=T0 + timedelta(hours=1)),
            Use("u1", "t2", "a", created_at=T0 + timedelta(hours=2)),
            Use("u2", "t2", "z", created_at=T0 + timedelta(hours=3)),
        ]
        assert recent_context_ids(usages, "u1") == ["a", "b"]
        assert recent_context_ids(usages, "u1", window=1) == ["a"]

    def test_co_occurrence_counts_threshold(self) -> None:
        usages = [
            # t1: recent context "a" used twice, user's "c" once -> 2 pairs
            Use("u1", "t1", "a"),
            Use("u2", "t1", "a"),
            Use("u1", "t1", "c"),
            # t2: recent "a" once, user's "d" once -> 1 pair (dropped)
            Use("u1", "t2", "a"),
            Use("u1", "t2", "d"),
            # another user's non-recent context never counts
            Use("u2", "t1", "e"),
        ]
        counts = co_occurrence_counts(usages, "u1", recent=["a"])
        assert counts == {"c": 2}

    def test_co_occurrence_min_count(self) -> None:
        usages = [Use("u1", "t1", "a"), Use("u1", "t1", "d")]
        assert co_occurrence_counts(usages, "u1", recent=["a"], min_count=1) == {"d": 1}

    def test_no_recent_contexts(self) -> None:
        assert co_occurrence_counts([Use("u1", "t1", "a")], "u1", recent=[]) == {}


class TestRank:
    """Test deterministic ordering."""

    @dataclass
    class Item:
        id: str
        score: float
        updated_at: datetime | None

    def _rank(self, items):
        return [
            i.id for i in rank(items, lambda i: i.score, lambda i: i.updated_at, lambda i: i.id)
        ]

    def test_score_descending(self) -> None:
        items = [self.Item("a", 0.1, T0), self.Item("b", 0.9, T0), self.Item("c", 0.5, T0)]
        assert self._rank(items) == ["b", "c", "a"]

    def test_ties_broken_by_recency_then_id(self) -> None:
        items = [
            self.Item("d", 0.5, T0),
            self.Item("b", 0.5, T0),
            self.Item("c", 0.5, T0 + timedelta(days=1)),
            self.Item("a", 0.5, None),
        ]
        assert self._rank(items) == ["c", "b", "d", "a"]

    def test_order_independent_of_input_order(self) -> None:
        items = [self.Item(str(i), float(i % 3), T0) for i in range(9)]
        assert self._rank(items) == self._rank(list(reversed(items)))
