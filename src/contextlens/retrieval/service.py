"""Semantic retrieval over stored embeddings and usage statistics.

RetrievalService answers the externally exposed queries: similarity search,
hybrid text and vector search, collaborative recommendations, effectiveness
ranking and context associations. Every result set excludes soft-deleted
items and applies the catalog visibility rule for the caller.

The service only reads. Vectors come from the embeddings table, catalog data
from a Catalog implementation, and all scoring goes through the pure
functions in ``contextlens.scoring``.

Example usage:
    >>> service = RetrievalService(
    ...     session_factory=session_factory,
    ...     catalog=SqlCatalog(session_factory),
    ...     provider=provider,
    ...     search_config=config.search,
    ...     embedding_config=config.embedding,
    ... )
    >>> results = await service.find_similar(query_vector, caller_id=user_id)
"""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

import numpy as np
import structlog
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contextlens.config import EmbeddingConfig, SearchConfig
from contextlens.database.models.job import ResourceType
from contextlens.database.queries.embedding import get_embedding, get_vectors
from contextlens.embeddings.provider import EmbeddingProvider
from contextlens.errors import QueryValidationError
from contextlens.pipeline.content import compose_embedding_text
from contextlens.retrieval.catalog import Catalog, CatalogItem, UsageRecord
from contextlens.retrieval.text_rank import TextRanker, text_rank
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
from contextlens.scoring.similarity import cosine_similarities, validate_vector

logger = structlog.get_logger(__name__)

MAX_RESULTS = 100


# ----------------------------------------------------------------------
# Request models
# ----------------------------------------------------------------------


class _Limit(BaseModel):
    limit: int = Field(ge=1, le=MAX_RESULTS)


class SimilarityQuery(_Limit):
    min_similarity: float = Field(ge=-1.0, le=1.0)


class HybridQuery(_Limit):
    query_text: str
    semantic_weight: float = Field(ge=0.0, le=1.0)


class EffectivenessQuery(BaseModel):
    min_usage_count: int = Field(ge=0)


def _validated(model: type[BaseModel], **values: object) -> BaseModel:
    try:
        return model(**values)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise QueryValidationError(details) from e


# ----------------------------------------------------------------------
# Result models
# ----------------------------------------------------------------------


class SimilarItem(BaseModel):
    """An item ranked by vector similarity."""

    id: UUID
    resource_type: ResourceType
    name: str
    description: str | None = None
    visibility: str
    team_id: UUID | None = None
    similarity: float
    updated_at: datetime | None = None


class HybridResult(BaseModel):
    """An item ranked by blended text and semantic relevance."""

    id: UUID
    name: str
    description: str | None = None
    text_rank: float = Field(ge=0.0, le=1.0)
    semantic_similarity: float | None = None
    hybrid_score: float
    updated_at: datetime | None = None


class Recommendation(BaseModel):
    """A context recommended to a user."""

    id: UUID
    name: str
    description: str | None = None
    recommendation_score: float
    co_occurrence_count: int = Field(ge=0)
    semantic_similarity: float | None = None
    usage_count: int = Field(ge=0)
    avg_rating: float
    updated_at: datetime | None = None


class EffectivenessResult(BaseModel):
    """Usage-based effectiveness of a context."""

    id: UUID
    name: str
    total_uses: int = Field(ge=0)
    avg_rating: float
    unique_templates: int = Field(ge=0)
    unique_users: int = Field(ge=0)
    effectiveness_score: float
    updated_at: datetime | None = None


class Association(BaseModel):
    """A context frequently used alongside a target context."""

    id: UUID
    name: str
    co_occurrence_count: int = Field(ge=0)
    association_strength: float = Field(ge=0.0)
    updated_at: datetime | None = None


def _by_score(attr: str):
    return lambda result: getattr(result, attr)


class RetrievalService:
    """Read-only query service over embeddings and usage.

    Attributes:
        session_factory: Factory producing sessions on the embeddings database
        catalog: Source of items, usage records and team membership
        provider: Embedding provider for text queries (optional)
        search_config: Default limits, thresholds and weights
        embedding_config: Model identifier and dimension of stored vectors
        ranker: Lexical ranker used by hybrid search
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog,
        provider: EmbeddingProvider | None = None,
        search_config: SearchConfig | None = None,
        embedding_config: EmbeddingConfig | None = None,
        ranker: TextRanker = text_rank,
    ) -> None:
        self.session_factory = session_factory
        self.catalog = catalog
        self.provider = provider
        self.search_config = search_config or SearchConfig()
        self.embedding_config = embedding_config or EmbeddingConfig()
        self.ranker = ranker
        self._logger = logger.bind(component="RetrievalService")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def model(self) -> str:
        return self.embedding_config.model

    def _query_vector(self, vector: Iterable[float] | np.ndarray) -> np.ndarray:
        return validate_vector(vector, self.embedding_config.dimension)

    async def _visible_items(
        self, resource_type: ResourceType, caller_id: UUID | None
    ) -> list[CatalogItem]:
        return await self.catalog.visible_items(resource_type, caller_id)

    async def _vectors(
        self, resource_type: ResourceType, ids: Iterable[UUID]
    ) -> dict[UUID, np.ndarray]:
        async with self.session_factory() as session:
            return await get_vectors(session, self.model, resource_type, ids)

    @staticmethod
    def _similarities(
        query: np.ndarray, vectors: dict[UUID, np.ndarray]
    ) -> dict[UUID, float]:
        if not vectors:
            return {}
        ids = list(vectors)
        sims = cosine_similarities(query, np.stack([vectors[i] for i in ids]))
        return {item_id: float(sim) for item_id, sim in zip(ids, sims)}

    # ------------------------------------------------------------------
    # Similarity search
    # ------------------------------------------------------------------

    async def find_similar(
        self,
        query_vector: Iterable[float] | np.ndarray,
        resource_type: ResourceType = ResourceType.context,
        caller_id: UUID | None = None,
        limit: int | None = None,
        min_similarity: float | None = None,
        exclude_ids: Iterable[UUID] = (),
    ) -> list[SimilarItem]:
        """Items whose stored vector is close to ``query_vector``.

        Args:
            query_vector: Query embedding of the model's dimension
            resource_type: Search contexts or templates
            caller_id: Caller for the visibility rule (None searches everything)
            limit: Maximum results (1..100)
            min_similarity: Similarity threshold, ``1 - cosine_distance``
            exclude_ids: Items to leave out

        Returns:
            Matching items, most similar first

        Raises:
            QueryValidationError: On a malformed vector, limit or threshold
        """
        query = self._query_vector(query_vector)
        params = _validated(
            SimilarityQuery,
            limit=limit if limit is not None else self.search_config.default_limit,
            min_similarity=(
                min_similarity if min_similarity is not None else self.search_config.min_similarity
            ),
        )
        excluded = set(exclude_ids)

        items = {
            item.id: item
            for item in await self._visible_items(resource_type, caller_id)
            if item.id not in excluded
        }
        similarities = self._similarities(query, await self._vectors(resource_type, items))

        results = [
            SimilarItem(
                id=item_id,
                resource_type=resource_type,
                name=items[item_id].name,
                description=items[item_id].description,
                visibility=items[item_id].visibility.value,
                team_id=items[item_id].team_id,
                similarity=similarity,
                updated_at=items[item_id].updated_at,
            )
            for item_id, similarity in similarities.items()
            if similarity >= params.min_similarity
        ]
        ranked = rank(results, _by_score("similarity"), lambda r: r.updated_at, lambda r: r.id)
        self._logger.info(
            "similarity_search_completed",
            resource_type=resource_type.value,
            candidates=len(items),
            matches=len(results),
        )
        return ranked[: params.limit]

    async def find_similar_to_resource(
        self,
        resource_id: UUID,
        resource_type: ResourceType = ResourceType.context,
        caller_id: UUID | None = None,
        limit: int | None = None,
        min_similarity: float | None = None,
    ) -> list[SimilarItem]:
        """Items similar to an already embedded item (never the item itself).

        Returns an empty list if the item has no embedding yet.
        """
        async with self.session_factory() as session:
            record = await get_embedding(session, resource_id, self.model)
        if record is None:
            self._logger.debug("similar_source_not_embedded", resource_id=str(resource_id))
            return []
        return await self.find_similar(
            record.vector,
            resource_type=resource_type,
            caller_id=caller_id,
            limit=limit,
            min_similarity=min_similarity,
            exclude_ids=[resource_id],
        )

    async def find_similar_to_text(
        self,
        text: str,
        resource_type: ResourceType = ResourceType.context,
        caller_id: UUID | None = None,
        limit: int | None = None,
        min_similarity: float | None = None,
    ) -> list[SimilarItem]:
        """Embed ``text`` with the provider and search by the result.

        Raises:
            RuntimeError: If the service has no embedding provider
        """
        if self.provider is None:
            raise RuntimeError("RetrievalService has no embedding provider for text queries")
        result = await self.provider.embed(text)
        return await self.find_similar(
            result.vector,
            resource_type=resource_type,
            caller_id=caller_id,
            limit=limit,
            min_similarity=min_similarity,
        )

    # ------------------------------------------------------------------
    # Hybrid search
    # ------------------------------------------------------------------

    async def hybrid_search(
        self,
        query_text: str,
        query_vector: Iterable[float] | np.ndarray | None = None,
        caller_id: UUID | None = None,
        limit: int | None = None,
        semantic_weight: float | None = None,
        resource_type: ResourceType = ResourceType.context,
    ) -> list[HybridResult]:
        """Rank visible items by blended lexical and semantic relevance.

        Items without an embedding (or queries without a vector) score on
        text alone; the missing semantic component counts as 0.

        Raises:
            QueryValidationError: On a malformed vector, limit or weight
        """
        params = _validated(
            HybridQuery,
            query_text=query_text,
            limit=limit if limit is not None else self.search_config.default_limit,
            semantic_weight=(
                semantic_weight
                if semantic_weight is not None
                else self.search_config.semantic_weight
            ),
        )
        query = self._query_vector(query_vector) if query_vector is not None else None

        items = await self._visible_items(resource_type, caller_id)
        similarities: dict[UUID, float] = {}
        if query is not None:
            similarities = self._similarities(
                query, await self._vectors(resource_type, [item.id for item in items])
            )

        results = []
        for item in items:
            lexical = self.ranker(params.query_text, compose_embedding_text(item.text()))
            semantic = similarities.get(item.id)
            results.append(
                HybridResult(
                    id=item.id,
                    name=item.name,
                    description=item.description,
                    text_rank=lexical,
                    semantic_similarity=semantic,
                    hybrid_score=hybrid_score(lexical, semantic, params.semantic_weight),
                    updated_at=item.updated_at,
                )
            )

        ranked = rank(results, _by_score("hybrid_score"), lambda r: r.updated_at, lambda r: r.id)
        return ranked[: params.limit]

    # ------------------------------------------------------------------
    # Usage-based rankings
    # ------------------------------------------------------------------

    async def recommend(
        self,
        user_id: UUID,
        query_vector: Iterable[float] | np.ndarray | None = None,
        limit: int | None = None,
    ) -> list[Recommendation]:
        """Contexts recommended to a user from co-usage, similarity and ratings.

        Every context visible to the user is scored; co-occurrence with the
        user's recent contexts is counted once it reaches two shared uses.

        Raises:
            QueryValidationError: On a malformed vector or limit
        """
        params = _validated(
            _Limit, limit=limit if limit is not None else self.search_config.default_limit
        )
        query = self._query_vector(query_vector) if query_vector is not None else None

        own = await self.catalog.usage_records(user_id=user_id)
        recent = recent_context_ids(own, user_id)
        # Only templates the user worked in can contribute co-occurrence
        shared = await self.catalog.usage_records(template_ids={u.template_id for u in own})
        co_counts = co_occurrence_counts(shared, user_id, recent)

        items = await self._visible_items(ResourceType.context, user_id)
        ratings = _ratings_by_context(
            await self.catalog.usage_records(context_ids=[item.id for item in items])
        )
        similarities: dict[UUID, float] = {}
        if query is not None:
            similarities = self._similarities(
                query, await self._vectors(ResourceType.context, [item.id for item in items])
            )

        results = []
        for item in items:
            co_count = co_counts.get(item.id, 0)
            semantic = similarities.get(item.id)
            rating = average_rating(ratings.get(item.id, []))
            results.append(
                Recommendation(
                    id=item.id,
                    name=item.name,
                    description=item.description,
                    recommendation_score=recommendation_score(
                        co_count, semantic, item.usage_count, rating
                    ),
                    co_occurrence_count=co_count,
                    semantic_similarity=semantic,
                    usage_count=item.usage_count,
                    avg_rating=rating,
                    updated_at=item.updated_at,
                )
            )

        ranked = rank(
            results, _by_score("recommendation_score"), lambda r: r.updated_at, lambda r: r.id
        )
        self._logger.info(
            "recommendations_computed",
            user_id=str(user_id),
            recent_contexts=len(recent),
            co_occurring=len(co_counts),
        )
        return ranked[: params.limit]

    async def effectiveness(
        self,
        caller_id: UUID | None = None,
        min_usage_count: int | None = None,
    ) -> list[EffectivenessResult]:
        """Contexts ranked by usage, ratings and reach.

        Contexts used fewer than ``min_usage_count`` times are omitted.

        Raises:
            QueryValidationError: If min_usage_count is negative
        """
        params = _validated(
            EffectivenessQuery,
            min_usage_count=(
                min_usage_count
                if min_usage_count is not None
                else self.search_config.min_usage_count
            ),
        )

        items = await self._visible_items(ResourceType.context, caller_id)
        by_context: dict[UUID, list[UsageRecord]] = defaultdict(list)
        for usage in await self.catalog.usage_records(context_ids=[item.id for item in items]):
            by_context[usage.context_id].append(usage)

        results = []
        for item in items:
            records = by_context.get(item.id, [])
            total_uses = len(records)
            if total_uses < params.min_usage_count:
                continue
            rating = average_rating(r.rating for r in records)
            templates = len({r.template_id for r in records})
            users = len({r.user_id for r in records})
            results.append(
                EffectivenessResult(
                    id=item.id,
                    name=item.name,
                    total_uses=total_uses,
                    avg_rating=rating,
                    unique_templates=templates,
                    unique_users=users,
                    effectiveness_score=effectiveness_score(total_uses, rating, templates, users),
                    updated_at=item.updated_at,
                )
            )

        return rank(
            results, _by_score("effectiveness_score"), lambda r: r.updated_at, lambda r: r.id
        )

    async def associations(
        self,
        resource_id: UUID,
        caller_id: UUID | None = None,
        limit: int | None = None,
        usage_user_id: UUID | None = None,
    ) -> list[Association]:
        """Contexts used in the same templates as ``resource_id``.

        Ranked by raw co-occurrence count; strength is the count divided by
        the target's total uses.

        Args:
            resource_id: Target context
            caller_id: Caller for the visibility rule
            limit: Maximum results (1..100)
            usage_user_id: Only count usage records of this user

        Raises:
            QueryValidationError: If limit is outside 1..100
        """
        params = _validated(
            _Limit, limit=limit if limit is not None else self.search_config.default_limit
        )
        target_uses = await self.catalog.usage_records(context_ids=[resource_id])
        if not target_uses:
            return []
        shared = await self.catalog.usage_records(
            user_id=usage_user_id, template_ids={u.template_id for u in target_uses}
        )
        co_counts: Counter[UUID] = Counter(
            u.context_id for u in shared if u.context_id != resource_id
        )

        items = {
            item.id: item
            for item in await self._visible_items(ResourceType.context, caller_id)
        }
        results = [
            Association(
                id=context_id,
                name=items[context_id].name,
                co_occurrence_count=count,
                association_strength=association_strength(count, len(target_uses)),
                updated_at=items[context_id].updated_at,
            )
            for context_id, count in co_counts.items()
            if context_id in items
        ]
        ranked = rank(
            results, _by_score("co_occurrence_count"), lambda r: r.updated_at, lambda r: r.id
        )
        return ranked[: params.limit]


def _ratings_by_context(usages: Iterable[UsageRecord]) -> dict[UUID, list[float | None]]:
    ratings: dict[UUID, list[float | None]] = defaultdict(list)
    for usage in usages:
        ratings[usage.context_id].append(usage.rating)
    return ratings
