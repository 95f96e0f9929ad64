"""Integration tests for RetrievalService over SQLite.

Tests cover:
- Similarity search ordering, threshold, limit and exclusion
- Visibility and soft deletion
- Near-duplicate texts ranking above unrelated ones
- Hybrid search weighting
- Recommendations, effectiveness ranking and associations
- Query validation
"""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import numpy as np
import pytest

from contextlens.database.models.base import utc_now
from contextlens.database.models.job import ResourceType
from contextlens.database.queries.embedding import upsert_embedding
from contextlens.errors import QueryValidationError
from contextlens.retrieval.catalog import Visibility
from contextlens.retrieval.service import RetrievalService

MODEL = "test-model"
DIMENSION = 32


def _vec(*components: float) -> np.ndarray:
    vector = np.zeros(DIMENSION, dtype=np.float32)
    vector[: len(components)] = components
    return vector


E0 = _vec(1.0)
E1 = _vec(0.0, 1.0)


@pytest.fixture
def service(session_factory, catalog, provider, search_config, embedding_config):
    return RetrievalService(
        session_factory,
        catalog,
        provider=provider,
        search_config=search_config,
        embedding_config=embedding_config,
    )


@pytest.fixture
def store_vector(session_factory):
    async def store(resource_id, vector, resource_type=ResourceType.context):
        async with session_factory() as session, session.begin():
            await upsert_embedding(
                session, resource_type, resource_id, MODEL, vector, content_hash="h"
            )

    return store


@pytest.mark.integration
class TestFindSimilar:
    """Test vector similarity search."""

    @pytest.mark.asyncio
    async def test_ordering_threshold_and_limit(self, service, seeder, store_vector) -> None:
        exact = await seeder.add_item(name="Exact")
        close = await seeder.add_item(name="Close")
        far = await seeder.add_item(name="Far")
        await seeder.add_item(name="Not embedded")
        await store_vector(exact, E0)
        await store_vector(close, _vec(1.0, 0.5))
        await store_vector(far, E1)

        results = await service.find_similar(E0, min_similarity=0.5)

        assert [r.id for r in results] == [exact, close]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[1].similarity == pytest.approx(1 / np.sqrt(1.25))
        assert [r.id for r in await service.find_similar(E0, min_similarity=0.5, limit=1)] == [
            exact
        ]
        everything = await service.find_similar(E0, min_similarity=-1.0)
        assert [r.id for r in everything] == [exact, close, far]

    @pytest.mark.asyncio
    async def test_resource_types_are_separate(self, service, seeder, store_vector) -> None:
        template = await seeder.add_item(name="Template", resource_type=ResourceType.template)
        await store_vector(template, E0, ResourceType.template)

        assert await service.find_similar(E0, min_similarity=0.0) == []
        results = await service.find_similar(
            E0, resource_type=ResourceType.template, min_similarity=0.0
        )
        assert [r.id for r in results] == [template]
        assert results[0].resource_type is ResourceType.template

    @pytest.mark.asyncio
    async def test_exclude_ids(self, service, seeder, store_vector) -> None:
        a = await seeder.add_item(name="A")
        b = await seeder.add_item(name="B")
        await store_vector(a, E0)
        await store_vector(b, E0)

        results = await service.find_similar(E0, min_similarity=0.0, exclude_ids=[a])
        assert [r.id for r in results] == [b]

    @pytest.mark.asyncio
    async def test_equal_scores_newest_first(self, service, seeder, store_vector) -> None:
        now = utc_now()
        older = await seeder.add_item(name="Older", updated_at=now - timedelta(days=1))
        newer = await seeder.add_item(name="Newer", updated_at=now)
        await store_vector(older, E0)
        await store_vector(newer, E0)

        results = await service.find_similar(E0, min_similarity=0.0)
        assert [r.id for r in results] == [newer, older]

    @pytest.mark.asyncio
    async def test_visibility(self, service, seeder, store_vector, catalog) -> None:
        owner, member, stranger, team = uuid4(), uuid4(), uuid4(), uuid4()
        await seeder.add_team_member(team, member)
        private = await seeder.add_item(name="Private", user_id=owner, visibility=Visibility.PRIVATE)
        shared = await seeder.add_item(
            name="Team", user_id=owner, team_id=team, visibility=Visibility.TEAM
        )
        public = await seeder.add_item(name="Public", user_id=owner, visibility=Visibility.PUBLIC)
        deleted = await seeder.add_item(
            name="Deleted", user_id=owner, visibility=Visibility.PUBLIC, deleted_at=utc_now()
        )
        for item_id in (private, shared, public, deleted):
            await store_vector(item_id, E0)

        async def visible(caller):
            results = await service.find_similar(E0, caller_id=caller, min_similarity=0.0)
            return {r.id for r in results}

        assert await visible(owner) == {private, shared, public}
        assert await visible(member) == {shared, public}
        assert await visible(stranger) == {public}
        assert await visible(None) == {private, shared, public}

    @pytest.mark.asyncio
    async def test_similar_to_resource(self, service, seeder, store_vector) -> None:
        source = await seeder.add_item(name="Source")
        other = await seeder.add_item(name="Other")
        unembedded = await seeder.add_item(name="Unembedded")
        await store_vector(source, E0)
        await store_vector(other, _vec(1.0, 0.1))

        results = await service.find_similar_to_resource(source, min_similarity=0.0)

        assert [r.id for r in results] == [other]
        assert await service.find_similar_to_resource(unembedded) == []

    @pytest.mark.asyncio
    async def test_near_duplicates_rank_above_unrelated(
        self, service, seeder, provider, store_vector
    ) -> None:
        texts = {
            "original": "Python web framework for building fast REST APIs with async handlers",
            "near": "Python web framework for building fast REST APIs with async views",
            "unrelated": "Chocolate cake recipe with vanilla frosting",
        }
        ids = {}
        for key, text in texts.items():
            ids[key] = await seeder.add_item(name="", content=text)
            await store_vector(ids[key], (await provider.embed(text)).vector)

        results = await service.find_similar_to_text(texts["original"], min_similarity=-1.0)
        scores = {r.id: r.similarity for r in results}

        assert scores[ids["original"]] == pytest.approx(1.0, abs=1e-5)
        assert scores[ids["near"]] > 0.9
        assert scores[ids["near"]] > scores[ids["unrelated"]]
        assert {r.id for r in results[:2]} == {ids["original"], ids["near"]}

    @pytest.mark.asyncio
    async def test_text_search_requires_provider(
        self, session_factory, catalog, embedding_config
    ) -> None:
        service = RetrievalService(session_factory, catalog, embedding_config=embedding_config)
        with pytest.raises(RuntimeError, match="no embedding provider"):
            await service.find_similar_to_text("anything")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"query_vector": [1.0, 0.0]},
            {"query_vector": E0, "limit": 0},
            {"query_vector": E0, "limit": 101},
            {"query_vector": E0, "min_similarity": 1.5},
        ],
    )
    async def test_validation(self, service, kwargs) -> None:
        with pytest.raises(QueryValidationError):
            await service.find_similar(**kwargs)


@pytest.mark.integration
class TestHybridSearch:
    """Test blended lexical and semantic ranking."""

    @pytest.fixture
    async def items(self, seeder, store_vector):
        oauth = await seeder.add_item(name="OAuth login", content="Sign in with OAuth tokens")
        database = await seeder.add_item(name="Database migrations", content="Alembic revisions")
        await store_vector(oauth, E0)
        await store_vector(database, E1)
        return oauth, database

    @pytest.mark.asyncio
    async def test_weight_zero_ranks_by_text(self, service, items) -> None:
        oauth, database = items
        results = await service.hybrid_search("oauth", query_vector=E1, semantic_weight=0.0)

        assert [r.id for r in results] == [oauth, database]
        assert results[0].hybrid_score == pytest.approx(results[0].text_rank)
        assert results[1].hybrid_score == 0.0

    @pytest.mark.asyncio
    async def test_weight_one_ranks_by_vector(self, service, items) -> None:
        oauth, database = items
        results = await service.hybrid_search("oauth", query_vector=E1, semantic_weight=1.0)

        assert [r.id for r in results] == [database, oauth]
        assert results[0].semantic_similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_without_query_vector(self, service, items) -> None:
        oauth, _ = items
        results = await service.hybrid_search("oauth tokens", semantic_weight=0.5)

        assert results[0].id == oauth
        assert results[0].semantic_similarity is None
        assert results[0].hybrid_score == pytest.approx(results[0].text_rank * 0.5)

    @pytest.mark.asyncio
    async def test_invalid_weight(self, service) -> None:
        with pytest.raises(QueryValidationError):
            await service.hybrid_search("oauth", semantic_weight=1.5)


@pytest.mark.integration
class TestRecommend:
    """Test collaborative recommendations."""

    @pytest.mark.asyncio
    async def test_usage_and_rating_components(self, service, seeder) -> None:
        user = uuid4()
        popular = await seeder.add_item(name="Popular", usage_count=50)
        quiet = await seeder.add_item(name="Quiet", usage_count=0)
        await seeder.add_item(name="Hidden", user_id=uuid4(), visibility=Visibility.PRIVATE)
        await seeder.add_usage(uuid4(), uuid4(), popular, rating=5.0)

        results = await service.recommend(user)

        assert [r.id for r in results] == [popular, quiet]
        top = results[0]
        assert top.avg_rating == pytest.approx(5.0)
        assert top.recommendation_score == pytest.approx(50 * 0.2 + 5.0 * 2)
        assert top.semantic_similarity is None

    @pytest.mark.asyncio
    async def test_query_vector_component(self, service, seeder, store_vector) -> None:
        popular = await seeder.add_item(name="Popular", usage_count=50)
        relevant = await seeder.add_item(name="Relevant")
        await store_vector(popular, E0)
        await store_vector(relevant, E1)

        results = await service.recommend(uuid4(), query_vector=E1)

        assert results[0].id == relevant
        assert results[0].recommendation_score == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_co_occurrence_with_recent_contexts(self, service, seeder) -> None:
        user, other, template = uuid4(), uuid4(), uuid4()
        now = utc_now()
        candidate = await seeder.add_item(name="Candidate")
        await seeder.add_usage(user, template, candidate, created_at=now - timedelta(days=30))
        # Twenty newer contexts push the candidate out of the recent window
        recent = [uuid4() for _ in range(20)]
        for i, context_id in enumerate(recent):
            await seeder.add_usage(
                user, uuid4(), context_id, created_at=now - timedelta(hours=i)
            )
        await seeder.add_usage(user, template, recent[0], created_at=now)
        await seeder.add_usage(other, template, recent[0], created_at=now)

        [result] = await service.recommend(user)

        assert result.id == candidate
        assert result.co_occurrence_count == 2
        assert result.recommendation_score == pytest.approx(2 * 0.4)

    @pytest.mark.asyncio
    async def test_limit(self, service, seeder) -> None:
        for i in range(5):
            await seeder.add_item(name=f"Context {i}", usage_count=i)

        assert len(await service.recommend(uuid4(), limit=3)) == 3
        with pytest.raises(QueryValidationError):
            await service.recommend(uuid4(), limit=0)


@pytest.mark.integration
class TestEffectivenessAndAssociations:
    """Test usage-based rankings."""

    @pytest.mark.asyncio
    async def test_effectiveness(self, service, seeder) -> None:
        u1, u2, t1, t2 = uuid4(), uuid4(), uuid4(), uuid4()
        heavy = await seeder.add_item(name="Heavy")
        light = await seeder.add_item(name="Light")
        await seeder.add_usage(u1, t1, heavy, rating=4.0)
        await seeder.add_usage(u2, t2, heavy, rating=5.0)
        await seeder.add_usage(u1, t2, heavy)
        await seeder.add_usage(u1, t1, light, rating=1.0)

        [result] = await service.effectiveness(min_usage_count=2)

        assert result.id == heavy
        assert result.total_uses == 3
        assert result.avg_rating == pytest.approx(4.5)
        assert (result.unique_templates, result.unique_users) == (2, 2)
        assert result.effectiveness_score == pytest.approx(3 * 0.3 + 4.5 * 20 + 2 * 0.2 + 2 * 0.1)

        both = await service.effectiveness(min_usage_count=0)
        assert [r.id for r in both] == [heavy, light]

    @pytest.mark.asyncio
    async def test_effectiveness_rejects_negative_threshold(self, service) -> None:
        with pytest.raises(QueryValidationError):
            await service.effectiveness(min_usage_count=-1)

    @pytest.mark.asyncio
    async def test_associations(self, service, seeder) -> None:
        user, other, t1, t2, t3 = uuid4(), uuid4(), uuid4(), uuid4(), uuid4()
        target = await seeder.add_item(name="Target")
        frequent = await seeder.add_item(name="Frequent")
        once = await seeder.add_item(name="Once")
        elsewhere = await seeder.add_item(name="Elsewhere")
        removed = await seeder.add_item(name="Removed", deleted_at=utc_now())
        for template in (t1, t2):
            await seeder.add_usage(user, template, target)
            await seeder.add_usage(user, template, frequent)
        await seeder.add_usage(other, t1, once)
        await seeder.add_usage(user, t1, removed)
        await seeder.add_usage(user, t3, elsewhere)

        results = await service.associations(target)

        assert [r.id for r in results] == [frequent, once]
        assert results[0].co_occurrence_count == 2
        assert results[0].association_strength == pytest.approx(1.0)
        assert results[1].association_strength == pytest.approx(0.5)

        mine = await service.associations(target, usage_user_id=user)
        assert [r.id for r in mine] == [frequent]

    @pytest.mark.asyncio
    async def test_associations_unused_target(self, service, seeder) -> None:
        assert await service.associations(uuid4()) == []
