"""Pytest fixtures for integration tests.

Provides async database fixtures for exercising the queue, embedding and
catalog queries against a file-backed SQLite database. Production runs on
PostgreSQL with pgvector; the queries used here are portable to SQLite.

Embeddings are produced by a deterministic hashing backend so pipeline and
retrieval tests never reach a model server.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import AsyncGenerator
from datetime import datetime
from pathlib import Path
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from contextlens.config import EmbeddingConfig, SearchConfig, WorkerConfig
from contextlens.database.models.base import Base, utc_now
from contextlens.database.models.job import ResourceType
from contextlens.embeddings.provider import EmbeddingProvider
from contextlens.pipeline.queue import JobQueue
from contextlens.retrieval.catalog import Visibility
from contextlens.retrieval.sql_catalog import (
    ITEM_TABLES,
    SqlCatalog,
    content_metadata,
    team_members,
    usage_relationships,
)

TEST_MODEL = "test-model"
TEST_DIMENSION = 32


class HashingBackend:
    """Bag-of-words embedder: each token adds 1.0 to a hashed bucket."""

    name = "hashing"

    def __init__(self, dimension: int = TEST_DIMENSION) -> None:
        self.dimension = dimension
        self.calls = 0

    @property
    def model(self) -> str:
        return TEST_MODEL

    def vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for token in re.findall(r"\w+", text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "big") % self.dimension] += 1.0
        return vector

    async def generate_embedding(self, text: str) -> list[float]:
        self.calls += 1
        return self.vector(text)

    async def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        return [self.vector(text) for text in texts]

    async def health_check(self) -> bool:
        return True


class CatalogSeeder:
    """Inserts rows into the content store tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def add_item(
        self,
        name: str,
        resource_type: ResourceType = ResourceType.context,
        description: str | None = None,
        content: str | None = None,
        user_id: UUID | None = None,
        team_id: UUID | None = None,
        visibility: Visibility = Visibility.PUBLIC,
        usage_count: int = 0,
        updated_at: datetime | None = None,
        deleted_at: datetime | None = None,
        item_id: UUID | None = None,
    ) -> UUID:
        item_id = item_id or uuid4()
        async with self.session_factory() as session, session.begin():
            await session.execute(
                insert(ITEM_TABLES[resource_type]).values(
                    id=item_id,
                    user_id=user_id,
                    team_id=team_id,
                    name=name,
                    description=description,
                    content=content,
                    visibility=visibility.value,
                    usage_count=usage_count,
                    updated_at=updated_at or utc_now(),
                    deleted_at=deleted_at,
                )
            )
        return item_id

    async def update_item(
        self, item_id: UUID, resource_type: ResourceType = ResourceType.context, **values
    ) -> None:
        table = ITEM_TABLES[resource_type]
        async with self.session_factory() as session, session.begin():
            await session.execute(table.update().where(table.c.id == item_id).values(**values))

    async def add_usage(
        self,
        user_id: UUID,
        template_id: UUID,
        context_id: UUID,
        rating: float | None = None,
        created_at: datetime | None = None,
    ) -> None:
        async with self.session_factory() as session, session.begin():
            await session.execute(
                insert(usage_relationships).values(
                    id=uuid4(),
                    user_id=user_id,
                    template_id=template_id,
                    context_id=context_id,
                    rating=rating,
                    created_at=created_at or utc_now(),
                )
            )

    async def add_team_member(self, team_id: UUID, user_id: UUID) -> None:
        async with self.session_factory() as session, session.begin():
            await session.execute(insert(team_members).values(team_id=team_id, user_id=user_id))


async def create_schema(engine: AsyncEngine) -> None:
    """Create the pipeline tables and the content store tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(content_metadata.create_all)


@pytest.fixture
def database_path(tmp_path: Path) -> Path:
    return tmp_path / "contextlens.db"


@pytest_asyncio.fixture
async def engine(database_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a SQLite async engine on a temporary file.

    A file database lets concurrent sessions use separate connections.

    Yields:
        Configured AsyncEngine with all tables created.
    """
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{database_path}", echo=False)
    await create_schema(test_engine)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine."""
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """A session for tests that call query functions directly."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(model=TEST_MODEL, dimension=TEST_DIMENSION, backends=["local"])


@pytest.fixture
def search_config() -> SearchConfig:
    return SearchConfig(min_similarity=0.0, default_limit=10, min_usage_count=0)


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(
        poll_interval_ms=10,
        batch_size=10,
        max_concurrency=4,
        max_retries=2,
        retry_delay_ms=0,
        shutdown_timeout_seconds=5.0,
    )


@pytest.fixture
def hashing_backend() -> HashingBackend:
    return HashingBackend()


@pytest.fixture
def provider(hashing_backend: HashingBackend) -> EmbeddingProvider:
    return EmbeddingProvider([hashing_backend], model=TEST_MODEL, dimension=TEST_DIMENSION)


@pytest.fixture
def job_queue(session_factory: async_sessionmaker[AsyncSession]) -> JobQueue:
    return JobQueue(session_factory, model=TEST_MODEL)


@pytest.fixture
def catalog(session_factory: async_sessionmaker[AsyncSession]) -> SqlCatalog:
    return SqlCatalog(session_factory)


@pytest.fixture
def seeder(session_factory: async_sessionmaker[AsyncSession]) -> CatalogSeeder:
    return CatalogSeeder(session_factory)
