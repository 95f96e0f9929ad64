"""Ranking formulas for hybrid search, recommendation, effectiveness and
association strength.

All functions here are pure: they take explicit inputs (scores, usage
records) and never touch storage. The weighting constants are a fixed
policy and are not configurable.

Ties are broken by recency (most recently updated first) and then by the
string form of the item ID, so every ranking is fully deterministic.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Callable, Collection, Hashable, Iterable
from datetime import datetime
from typing import Protocol, TypeVar

from contextlens.errors import QueryValidationError

T = TypeVar("T")

# Recommendation policy
RECENT_USAGE_WINDOW = 20
MIN_CO_OCCURRENCE = 2
CO_OCCURRENCE_WEIGHT = 0.4
SEMANTIC_SIMILARITY_WEIGHT = 30.0
USAGE_COUNT_CAP = 100
USAGE_COUNT_WEIGHT = 0.2
RATING_WEIGHT = 2.0

# Effectiveness policy
TOTAL_USES_CAP = 100
TOTAL_USES_WEIGHT = 0.3
EFFECTIVENESS_RATING_WEIGHT = 20.0
UNIQUE_TEMPLATES_WEIGHT = 0.2
UNIQUE_USERS_WEIGHT = 0.1


class Usage(Protocol):
    """A usage record: a user applied a context within a template."""

    user_id: Hashable
    template_id: Hashable
    context_id: Hashable
    rating: float | None
    created_at: datetime


def hybrid_score(
    text_rank: float | None,
    semantic_similarity: float | None,
    semantic_weight: float,
) -> float:
    """Blend lexical and semantic relevance.

    ``text_rank * (1 - w) + semantic_similarity * w``; a missing component
    contributes 0.

    Raises:
        QueryValidationError: If semantic_weight is outside [0, 1]
    """
    if not 0.0 <= semantic_weight <= 1.0:
        raise QueryValidationError(
            f"Semantic weight must be between 0 and 1, got {semantic_weight}"
        )
    text = text_rank or 0.0
    semantic = semantic_similarity or 0.0
    if semantic_weight == 0.0:
        return text
    if semantic_weight == 1.0:
        return semantic
    return text * (1.0 - semantic_weight) + semantic * semantic_weight


def recommendation_score(
    co_occurrence_count: int,
    semantic_similarity: float | None,
    usage_count: int,
    avg_rating: float,
) -> float:
    """Collaborative recommendation score.

    ``co * 0.4 + sim * 30 + min(usage, 100) * 0.2 + rating * 2``, where sim
    is 0 when no query vector or no stored vector is available.
    """
    return (
        co_occurrence_count * CO_OCCURRENCE_WEIGHT
        + (semantic_similarity or 0.0) * SEMANTIC_SIMILARITY_WEIGHT
        + min(usage_count, USAGE_COUNT_CAP) * USAGE_COUNT_WEIGHT
        + avg_rating * RATING_WEIGHT
    )


def effectiveness_score(
    total_uses: int,
    avg_rating: float,
    unique_templates: int,
    unique_users: int,
) -> float:
    """``min(uses, 100) * 0.3 + rating * 20 + templates * 0.2 + users * 0.1``."""
    return (
        min(total_uses, TOTAL_USES_CAP) * TOTAL_USES_WEIGHT
        + avg_rating * EFFECTIVENESS_RATING_WEIGHT
        + unique_templates * UNIQUE_TEMPLATES_WEIGHT
        + unique_users * UNIQUE_USERS_WEIGHT
    )


def association_strength(co_occurrence_count: int, total_uses_of_target: int) -> float:
    """Co-occurrence normalized by the target's total uses (at least 1)."""
    return co_occurrence_count / max(total_uses_of_target, 1)


def average_rating(ratings: Iterable[float | None]) -> float:
    """Mean of the non-null ratings, 0 when there are none."""
    values = [r for r in ratings if r is not None]
    if not values:
        return 0.0
    return sum(values) / len(values)


def recent_context_ids(
    usages: Iterable[Usage],
    user_id: Hashable,
    window: int = RECENT_USAGE_WINDOW,
) -> list[Hashable]:
    """Distinct contexts the user used most recently, newest first."""
    own = sorted(
        (u for u in usages if u.user_id == user_id),
        key=lambda u: u.created_at,
        reverse=True,
    )
    recent: list[Hashable] = []
    for usage in own:
        if usage.context_id not in recent:
            recent.append(usage.context_id)
            if len(recent) == window:
                break
    return recent


def co_occurrence_counts(
    usages: Iterable[Usage],
    user_id: Hashable,
    recent: Collection[Hashable],
    min_count: int = MIN_CO_OCCURRENCE,
) -> dict[Hashable, int]:
    """Count how often other contexts share templates with recent contexts.

    For every template, each usage of a recent context (by anyone) pairs
    with each of the user's usages of a non-recent context in the same
    template. Contexts with fewer than ``min_count`` pairs are dropped.

    Args:
        usages: All usage records
        user_id: User the recommendations are for
        recent: The user's recent context IDs
        min_count: Minimum pair count to keep a context

    Returns:
        Mapping of context ID to pair count
    """
    recent_set = set(recent)
    by_template: dict[Hashable, list[Usage]] = defaultdict(list)
    for usage in usages:
        by_template[usage.template_id].append(usage)

    counts: Counter[Hashable] = Counter()
    for records in by_template.values():
        recent_uses = sum(1 for u in records if u.context_id in recent_set)
        if not recent_uses:
            continue
        for usage in records:
            if usage.user_id == user_id and usage.context_id not in recent_set:
                counts[usage.context_id] += recent_uses

    return {context_id: n for context_id, n in counts.items() if n >= min_count}


def rank(
    items: Iterable[T],
    score: Callable[[T], float],
    recency: Callable[[T], datetime | None] = lambda item: None,
    ident: Callable[[T], object] = id,
) -> list[T]:
    """Order items by score desc, then recency desc, then ID string asc."""
    by_id = sorted(items, key=lambda item: str(ident(item)))

    def key(item: T) -> tuple[float, float]:
        updated = recency(item)
        return (score(item), updated.timestamp() if updated is not None else float("-inf"))

    # sorted() is stable under reverse=True, so equal keys keep ID order
    return sorted(by_id, key=key, reverse=True)
