"""Pure scoring functions over vectors and usage aggregates."""

from contextlens.scoring.ranking import (
    association_strength,
    effectiveness_score,
    hybrid_score,
    rank,
    recommendation_score,
)
from contextlens.scoring.similarity import (
    cosine_distance,
    cosine_similarities,
    cosine_similarity,
    validate_vector,
)

__all__ = [
    "cosine_similarity",
    "cosine_distance",
    "cosine_similarities",
    "validate_vector",
    "hybrid_score",
    "recommendation_score",
    "effectiveness_score",
    "association_strength",
    "rank",
]
