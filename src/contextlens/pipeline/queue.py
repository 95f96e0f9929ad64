"""Job queue service.

JobQueue wraps the queue query functions with a session factory and runs
each operation in its own transaction. It is the only component that moves
jobs between states; the worker and the enqueuer talk to the queue through
it.

Example usage:
    >>> queue = JobQueue(session_factory, model="all-MiniLM-L6-v2")
    >>> job_id = await queue.enqueue(ResourceType.context, resource_id)
    >>> jobs = await queue.claim(limit=10)
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import numpy as np
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contextlens.database.models.base import utc_now
from contextlens.database.models.embedding import EmbeddingRecord
from contextlens.database.models.job import EmbeddingJob, JobStatus, ResourceType
from contextlens.database.queries import embedding as embedding_queries
from contextlens.database.queries import queue as queue_queries
from contextlens.database.queries.queue import DEFAULT_PRIORITY, QueueStats

logger = structlog.get_logger(__name__)

__all__ = ["JobQueue", "QueueStats"]


class JobQueue:
    """Transactional facade over the embedding job queue.

    Attributes:
        session_factory: Factory producing database sessions
        model: Embedding model identifier written on stored records
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        model: str,
    ) -> None:
        self.session_factory = session_factory
        self.model = model
        self.logger = logger.bind(component="JobQueue")

    async def enqueue(
        self,
        resource_type: ResourceType,
        resource_id: UUID,
        priority: int = DEFAULT_PRIORITY,
    ) -> UUID | None:
        """Enqueue a job; returns None if one was already pending."""
        async with self.session_factory() as session, session.begin():
            return await queue_queries.enqueue_job(
                session, resource_type, resource_id, priority
            )

    async def claim(self, limit: int) -> list[EmbeddingJob]:
        """Claim up to ``limit`` pending jobs for processing."""
        async with self.session_factory() as session, session.begin():
            return await queue_queries.claim_jobs(session, limit)

    async def complete_with_embedding(
        self,
        job: EmbeddingJob,
        vector: np.ndarray,
        content_hash: str,
        metadata: dict[str, Any],
    ) -> EmbeddingRecord:
        """Store the job's embedding and mark the job completed atomically.

        Args:
            job: A job in processing state
            vector: Generated embedding
            content_hash: Hash of the text that was embedded
            metadata: Generation details stored on the record

        Returns:
            The stored EmbeddingRecord.

        Raises:
            InvalidTransitionError: If the job is no longer processing, in
                which case nothing is written.
        """
        async with self.session_factory() as session, session.begin():
            record = await embedding_queries.upsert_embedding(
                session,
                resource_type=job.resource_type,
                resource_id=job.resource_id,
                model=self.model,
                vector=vector,
                content_hash=content_hash,
                metadata=metadata,
            )
            await queue_queries.complete_job(session, job.id)

        self.logger.info(
            "job_completed",
            job_id=str(job.id),
            resource_type=job.resource_type.value,
            resource_id=str(job.resource_id),
            duration_ms=metadata.get("generation_time_ms"),
        )
        return record

    async def fail(
        self,
        job: EmbeddingJob,
        error_message: str,
        max_retries: int,
        retry_delay: timedelta,
        permanent: bool = False,
    ) -> EmbeddingJob:
        """Record a failed attempt; the job is retried or marked failed."""
        async with self.session_factory() as session, session.begin():
            return await queue_queries.fail_job(
                session,
                job.id,
                error_message=error_message,
                max_retries=max_retries,
                retry_delay=retry_delay,
                permanent=permanent,
            )

    async def get(self, job_id: UUID) -> EmbeddingJob | None:
        """Get a job by ID."""
        async with self.session_factory() as session:
            return await queue_queries.get_job(session, job_id)

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        resource_type: ResourceType | None = None,
        resource_id: UUID | None = None,
        limit: int = 100,
    ) -> list[EmbeddingJob]:
        """List jobs in claim order with optional filters."""
        async with self.session_factory() as session:
            return await queue_queries.list_jobs(
                session,
                status=status,
                resource_type=resource_type,
                resource_id=resource_id,
                limit=limit,
            )

    async def stats(self) -> QueueStats:
        """Counts by status and average retry count."""
        async with self.session_factory() as session:
            return await queue_queries.get_queue_stats(session)

    async def retry(self, job_id: UUID) -> UUID | None:
        """Queue a new attempt for a failed job."""
        async with self.session_factory() as session, session.begin():
            new_id = await queue_queries.retry_job(session, job_id)
        self.logger.info(
            "job_retry_requested",
            job_id=str(job_id),
            new_job_id=str(new_id) if new_id else None,
        )
        return new_id

    async def remove(self, job_id: UUID) -> bool:
        """Delete a job that is not being processed."""
        async with self.session_factory() as session, session.begin():
            return await queue_queries.remove_job(session, job_id)

    async def clear(self, status: JobStatus) -> int:
        """Delete all completed or all failed jobs."""
        async with self.session_factory() as session, session.begin():
            return await queue_queries.clear_jobs(session, status)

    async def purge(self, retention_days: int, now: datetime | None = None) -> int:
        """Delete terminal jobs that finished more than ``retention_days`` ago."""
        cutoff = (now or utc_now()) - timedelta(days=retention_days)
        async with self.session_factory() as session, session.begin():
            return await queue_queries.purge_terminal_jobs(session, cutoff)

    async def recover_stale(
        self,
        stale_after: timedelta,
        max_retries: int,
        now: datetime | None = None,
    ) -> list[EmbeddingJob]:
        """Resolve jobs stuck in processing for longer than ``stale_after``."""
        now = now or utc_now()
        async with self.session_factory() as session, session.begin():
            return await queue_queries.requeue_stale_jobs(
                session,
                started_before=now - stale_after,
                max_retries=max_retries,
                now=now,
            )

    async def content_hashes(self, resource_ids: Iterable[UUID]) -> dict[UUID, str]:
        """Content hashes of stored embeddings for the queue's model."""
        async with self.session_factory() as session:
            return await embedding_queries.get_content_hashes(
                session, self.model, resource_ids
            )

    async def store_embedding(
        self,
        resource_type: ResourceType,
        resource_id: UUID,
        vector: np.ndarray,
        content_hash: str,
        metadata: dict[str, Any],
    ) -> EmbeddingRecord:
        """Upsert an embedding without touching any job."""
        async with self.session_factory() as session, session.begin():
            return await embedding_queries.upsert_embedding(
                session,
                resource_type=resource_type,
                resource_id=resource_id,
                model=self.model,
                vector=vector,
                content_hash=content_hash,
                metadata=metadata,
            )
