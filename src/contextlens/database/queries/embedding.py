"""Embedding record query functions for contextlens.

Provides the atomic upsert used by the worker and the read helpers used by
retrieval and staleness detection.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from typing import Any
from uuid import UUID

import numpy as np
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from contextlens.database.connection import dialect_insert
from contextlens.database.models.base import utc_now
from contextlens.database.models.embedding import EmbeddingRecord
from contextlens.database.models.job import ResourceType

logger = structlog.get_logger(__name__)


async def upsert_embedding(
    session: AsyncSession,
    resource_type: ResourceType,
    resource_id: UUID,
    model: str,
    vector: Sequence[float] | np.ndarray,
    content_hash: str,
    metadata: dict[str, Any] | None = None,
) -> EmbeddingRecord:
    """Insert or replace the vector stored for ``(resource_id, model)``.

    Vector, content hash and metadata are written in a single statement so
    a record never pairs a vector with the hash of different text.

    Args:
        session: Active async database session.
        resource_type: Kind of the embedded resource.
        resource_id: Identifier of the embedded resource.
        model: Embedding model identifier.
        vector: The embedding vector.
        content_hash: SHA-256 hex digest of the embedded text.
        metadata: Generation details (latency, backend, ...).

    Returns:
        The stored EmbeddingRecord.
    """
    now = utc_now()
    table = EmbeddingRecord.__table__
    values = np.asarray(vector, dtype=np.float32)

    stmt = dialect_insert(session, table).values(
        id=uuid.uuid4(),
        resource_id=resource_id,
        resource_type=resource_type,
        model=model,
        vector=values,
        content_hash=content_hash,
        metadata=metadata or {},
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.resource_id, table.c.model],
        set_={
            "resource_type": stmt.excluded.resource_type,
            "vector": stmt.excluded.vector,
            "content_hash": stmt.excluded.content_hash,
            "metadata": stmt.excluded["metadata"],
            "updated_at": now,
        },
    )
    await session.execute(stmt)

    record = await get_embedding(session, resource_id, model, refresh=True)
    if record is None:
        raise RuntimeError(f"Embedding upsert for {resource_id} ({model}) returned no row")

    logger.debug(
        "embedding_upserted",
        resource_id=str(resource_id),
        model=model,
        dimension=int(values.shape[0]),
        content_hash=content_hash,
    )
    return record


async def get_embedding(
    session: AsyncSession,
    resource_id: UUID,
    model: str,
    refresh: bool = False,
) -> EmbeddingRecord | None:
    """Get the stored embedding for a resource and model.

    Args:
        session: Active async database session.
        resource_id: Identifier of the resource.
        model: Embedding model identifier.
        refresh: Overwrite any copy already loaded in the session.

    Returns:
        The EmbeddingRecord, or None if the resource is not embedded.
    """
    stmt = select(EmbeddingRecord).where(
        EmbeddingRecord.resource_id == resource_id,
        EmbeddingRecord.model == model,
    )
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_vectors(
    session: AsyncSession,
    model: str,
    resource_type: ResourceType | None = None,
    resource_ids: Iterable[UUID] | None = None,
) -> dict[UUID, np.ndarray]:
    """Load stored vectors keyed by resource ID.

    Args:
        session: Active async database session.
        model: Embedding model identifier.
        resource_type: Only vectors of this resource type.
        resource_ids: Only vectors of these resources.

    Returns:
        Mapping of resource ID to float32 vector.
    """
    stmt = select(EmbeddingRecord.resource_id, EmbeddingRecord.vector).where(
        EmbeddingRecord.model == model
    )
    if resource_type is not None:
        stmt = stmt.where(EmbeddingRecord.resource_type == resource_type)
    if resource_ids is not None:
        ids = list(resource_ids)
        if not ids:
            return {}
        stmt = stmt.where(EmbeddingRecord.resource_id.in_(ids))

    result = await session.execute(stmt)
    return {
        row.resource_id: np.asarray(row.vector, dtype=np.float32)
        for row in result.all()
    }


async def get_content_hashes(
    session: AsyncSession,
    model: str,
    resource_ids: Iterable[UUID],
) -> dict[UUID, str]:
    """Map resource IDs to the content hash of their stored embedding.

    Resources without an embedding for ``model`` are absent from the result.
    """
    ids = list(resource_ids)
    if not ids:
        return {}
    stmt = select(EmbeddingRecord.resource_id, EmbeddingRecord.content_hash).where(
        EmbeddingRecord.model == model,
        EmbeddingRecord.resource_id.in_(ids),
    )
    result = await session.execute(stmt)
    return {row.resource_id: row.content_hash for row in result.all()}
