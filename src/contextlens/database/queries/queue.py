"""Embedding job queue query functions for contextlens.

Provides async functions for enqueueing jobs, atomically claiming batches,
resolving claimed jobs and maintaining the queue (statistics, manual
retries, retention purges and stale job recovery).

These functions do not open or commit transactions. Callers run them inside
``session.begin()`` so that a resolve and the vector write it accompanies
commit together.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from contextlens.database.connection import dialect_insert
from contextlens.database.models.base import utc_now
from contextlens.database.models.job import (
    PENDING_ONLY,
    TERMINAL_STATUSES,
    EmbeddingJob,
    JobStatus,
    ResourceType,
)
from contextlens.pipeline.state_machine import ensure_transition, failure_outcome

logger = structlog.get_logger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


class QueueStats(BaseModel):
    """Job counts by status plus the average retry count."""

    pending: int = Field(default=0, ge=0)
    processing: int = Field(default=0, ge=0)
    completed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    avg_retry_count: float = Field(default=0.0, ge=0.0)


def validate_priority(priority: int) -> int:
    """Return priority unchanged or raise ValueError if outside 1..10."""
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValueError(
            f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}"
        )
    return priority


async def enqueue_job(
    session: AsyncSession,
    resource_type: ResourceType,
    resource_id: UUID,
    priority: int = DEFAULT_PRIORITY,
) -> UUID | None:
    """Insert a pending job unless one is already pending for the resource.

    Args:
        session: Active async database session.
        resource_type: Kind of resource to embed.
        resource_id: Identifier of the resource.
        priority: 1 (highest) to 10 (lowest).

    Returns:
        ID of the new job, or None if a pending job already existed.

    Raises:
        ValueError: If priority is outside 1..10.
    """
    validate_priority(priority)
    now = utc_now()
    table = EmbeddingJob.__table__

    stmt = (
        dialect_insert(session, table)
        .values(
            id=uuid.uuid4(),
            resource_type=resource_type,
            resource_id=resource_id,
            priority=priority,
            status=JobStatus.pending,
            retry_count=0,
            available_at=now,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=[table.c.resource_type, table.c.resource_id],
            index_where=PENDING_ONLY,
        )
        .returning(table.c.id)
    )

    result = await session.execute(stmt)
    job_id = result.scalar_one_or_none()

    if job_id is None:
        logger.debug(
            "job_already_pending",
            resource_type=resource_type.value,
            resource_id=str(resource_id),
        )
    else:
        logger.info(
            "job_enqueued",
            job_id=str(job_id),
            resource_type=resource_type.value,
            resource_id=str(resource_id),
            priority=priority,
        )
    return job_id


async def claim_jobs(
    session: AsyncSession,
    limit: int,
    now: datetime | None = None,
) -> list[EmbeddingJob]:
    """Atomically move up to ``limit`` pending jobs to processing.

    Candidates are pending jobs whose ``available_at`` has passed and whose
    resource has no job in processing, taken in ``priority, created_at``
    order. On PostgreSQL rows locked by a concurrent claim are skipped.

    Args:
        session: Active async database session.
        limit: Maximum number of jobs to claim.
        now: Claim timestamp (defaults to the current time).

    Returns:
        Claimed jobs in claim order.
    """
    if limit <= 0:
        return []
    now = now or utc_now()

    candidate = aliased(EmbeddingJob, name="candidate")
    running = aliased(EmbeddingJob, name="running")

    in_flight = (
        select(running.id)
        .where(
            running.resource_type == candidate.resource_type,
            running.resource_id == candidate.resource_id,
            running.status == JobStatus.processing,
        )
        .correlate(candidate)
    )
    candidates = (
        select(candidate.id)
        .where(
            candidate.status == JobStatus.pending,
            candidate.available_at <= now,
            ~in_flight.exists(),
        )
        .order_by(candidate.priority.asc(), candidate.created_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )

    stmt = (
        update(EmbeddingJob)
        .where(
            EmbeddingJob.id.in_(candidates),
            EmbeddingJob.status == JobStatus.pending,
        )
        .values(status=JobStatus.processing, started_at=now, updated_at=now)
        .returning(EmbeddingJob)
        .execution_options(synchronize_session=False)
    )

    result = await session.execute(stmt)
    jobs = list(result.scalars().all())
    # RETURNING does not preserve the subquery's ordering
    jobs.sort(key=lambda job: (job.priority, job.created_at))

    if jobs:
        logger.info("jobs_claimed", count=len(jobs), job_ids=[str(j.id) for j in jobs])
    return jobs


async def get_job(session: AsyncSession, job_id: UUID) -> EmbeddingJob | None:
    """Get a job by ID.

    Args:
        session: Active async database session.
        job_id: UUID of the job.

    Returns:
        The EmbeddingJob, or None if not found.
    """
    result = await session.execute(select(EmbeddingJob).where(EmbeddingJob.id == job_id))
    return result.scalar_one_or_none()


async def _require_job(
    session: AsyncSession, job_id: UUID, for_update: bool = False
) -> EmbeddingJob:
    stmt = select(EmbeddingJob).where(EmbeddingJob.id == job_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    job = result.scalar_one_or_none()
    if job is None:
        raise ValueError(f"Embedding job {job_id} not found")
    return job


async def _other_pending_job(session: AsyncSession, job: EmbeddingJob) -> UUID | None:
    stmt = select(EmbeddingJob.id).where(
        EmbeddingJob.resource_type == job.resource_type,
        EmbeddingJob.resource_id == job.resource_id,
        EmbeddingJob.status == JobStatus.pending,
        EmbeddingJob.id != job.id,
    )
    result = await session.execute(stmt.limit(1))
    return result.scalar_one_or_none()


async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    now: datetime | None = None,
) -> EmbeddingJob:
    """Resolve a processing job as completed.

    Args:
        session: Active async database session.
        job_id: UUID of the job.
        now: Completion timestamp (defaults to the current time).

    Returns:
        The updated EmbeddingJob.

    Raises:
        ValueError: If the job does not exist.
        InvalidTransitionError: If the job is not processing.
    """
    job = await _require_job(session, job_id, for_update=True)
    ensure_transition(job.status, JobStatus.completed, str(job_id))

    job.status = JobStatus.completed
    job.completed_at = now or utc_now()
    await session.flush()
    return job


async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    error_message: str,
    max_retries: int,
    retry_delay: timedelta = timedelta(0),
    permanent: bool = False,
    now: datetime | None = None,
) -> EmbeddingJob:
    """Resolve a failed attempt on a processing job.

    The job returns to pending with ``retry_count + 1`` while the retry
    budget lasts and the error is not permanent. It becomes claimable again
    after ``retry_delay``. Otherwise the job is marked failed. A job that
    would be retried while a newer pending job exists for the same resource
    is failed as superseded instead.

    Args:
        session: Active async database session.
        job_id: UUID of the job.
        error_message: Description of the failure.
        max_retries: Retry budget.
        retry_delay: Delay before a retried job can be claimed again.
        permanent: True if retrying cannot succeed.
        now: Resolution timestamp (defaults to the current time).

    Returns:
        The updated EmbeddingJob.

    Raises:
        ValueError: If the job does not exist.
        InvalidTransitionError: If the job is not processing.
    """
    now = now or utc_now()
    job = await _require_job(session, job_id, for_update=True)
    target = failure_outcome(job.retry_count, max_retries, permanent)
    ensure_transition(job.status, target, str(job_id))

    if target is JobStatus.pending:
        newer = await _other_pending_job(session, job)
        if newer is not None:
            target = JobStatus.failed
            error_message = f"{error_message} (superseded by job {newer})"

    job.error_message = error_message
    if target is JobStatus.pending:
        job.status = JobStatus.pending
        job.retry_count += 1
        job.available_at = now + retry_delay
        job.started_at = None
        logger.warning(
            "job_retry_scheduled",
            job_id=str(job_id),
            retry_count=job.retry_count,
            max_retries=max_retries,
            error=error_message,
        )
    else:
        job.status = JobStatus.failed
        job.completed_at = now
        logger.error(
            "job_failed",
            job_id=str(job_id),
            retry_count=job.retry_count,
            permanent=permanent,
            error=error_message,
        )

    await session.flush()
    return job


async def list_jobs(
    session: AsyncSession,
    status: JobStatus | None = None,
    resource_type: ResourceType | None = None,
    resource_id: UUID | None = None,
    limit: int = 100,
) -> list[EmbeddingJob]:
    """List jobs with optional filters, in claim order.

    Args:
        session: Active async database session.
        status: Only jobs with this status.
        resource_type: Only jobs for this resource type.
        resource_id: Only jobs for this resource.
        limit: Maximum number of jobs to return.

    Returns:
        List of EmbeddingJob instances ordered by priority, then age.
    """
    stmt = select(EmbeddingJob)
    if status is not None:
        stmt = stmt.where(EmbeddingJob.status == status)
    if resource_type is not None:
        stmt = stmt.where(EmbeddingJob.resource_type == resource_type)
    if resource_id is not None:
        stmt = stmt.where(EmbeddingJob.resource_id == resource_id)
    stmt = stmt.order_by(EmbeddingJob.priority.asc(), EmbeddingJob.created_at.asc()).limit(limit)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_queue_stats(session: AsyncSession) -> QueueStats:
    """Get job counts by status and the average retry count.

    Args:
        session: Active async database session.

    Returns:
        QueueStats snapshot of the whole queue.
    """
    stmt = select(
        EmbeddingJob.status,
        func.count(EmbeddingJob.id).label("count"),
        func.sum(EmbeddingJob.retry_count).label("retries"),
    ).group_by(EmbeddingJob.status)

    result = await session.execute(stmt)

    counts: dict[str, int] = {}
    total = 0
    retries = 0
    for row in result.all():
        counts[row.status.value] = row.count
        total += row.count
        retries += row.retries or 0

    return QueueStats(
        **counts,
        total=total,
        avg_retry_count=(retries / total) if total else 0.0,
    )


async def retry_job(session: AsyncSession, job_id: UUID) -> UUID | None:
    """Queue a fresh attempt for a failed job.

    The failed row stays as history; a new pending job is enqueued for the
    same resource with the same priority.

    Args:
        session: Active async database session.
        job_id: UUID of the failed job.

    Returns:
        ID of the new pending job, or None if one was already pending.

    Raises:
        ValueError: If the job does not exist or has not failed.
    """
    job = await _require_job(session, job_id)
    if job.status is not JobStatus.failed:
        raise ValueError(f"Only failed jobs can be retried, job {job_id} is {job.status.value}")
    return await enqueue_job(session, job.resource_type, job.resource_id, job.priority)


async def remove_job(session: AsyncSession, job_id: UUID) -> bool:
    """Delete a job that no worker currently owns.

    Args:
        session: Active async database session.
        job_id: UUID of the job.

    Returns:
        True if the job was deleted, False if it did not exist.

    Raises:
        ValueError: If the job is processing.
    """
    job = await get_job(session, job_id)
    if job is None:
        return False
    if job.status is JobStatus.processing:
        raise ValueError(f"Job {job_id} is being processed and cannot be removed")
    await session.delete(job)
    await session.flush()
    logger.info("job_removed", job_id=str(job_id), status=job.status.value)
    return True


async def clear_jobs(session: AsyncSession, status: JobStatus) -> int:
    """Delete every job with a terminal status.

    Args:
        session: Active async database session.
        status: JobStatus.completed or JobStatus.failed.

    Returns:
        Number of deleted jobs.

    Raises:
        ValueError: If status is not terminal.
    """
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Only completed or failed jobs can be cleared, got {status.value}")
    result = await session.execute(
        delete(EmbeddingJob)
        .where(EmbeddingJob.status == status)
        .execution_options(synchronize_session=False)
    )
    logger.info("jobs_cleared", status=status.value, count=result.rowcount)
    return result.rowcount


async def purge_terminal_jobs(session: AsyncSession, older_than: datetime) -> int:
    """Delete completed and failed jobs that finished before ``older_than``.

    Args:
        session: Active async database session.
        older_than: Retention cutoff.

    Returns:
        Number of deleted jobs.
    """
    result = await session.execute(
        delete(EmbeddingJob)
        .where(
            EmbeddingJob.status.in_(list(TERMINAL_STATUSES)),
            EmbeddingJob.completed_at < older_than,
        )
        .execution_options(synchronize_session=False)
    )
    logger.info("terminal_jobs_purged", older_than=older_than.isoformat(), count=result.rowcount)
    return result.rowcount


async def requeue_stale_jobs(
    session: AsyncSession,
    started_before: datetime,
    max_retries: int,
    now: datetime | None = None,
) -> list[EmbeddingJob]:
    """Resolve jobs stuck in processing since before ``started_before``.

    Each stale job is treated as a transient failed attempt, so it is
    retried while budget remains and failed otherwise.

    Args:
        session: Active async database session.
        started_before: Jobs claimed before this instant are stale.
        max_retries: Retry budget.
        now: Resolution timestamp (defaults to the current time).

    Returns:
        The resolved jobs.
    """
    result = await session.execute(
        select(EmbeddingJob.id).where(
            EmbeddingJob.status == JobStatus.processing,
            EmbeddingJob.started_at < started_before,
        )
    )
    stale_ids = list(result.scalars().all())

    recovered = []
    for job_id in stale_ids:
        job = await fail_job(
            session,
            job_id,
            error_message="Abandoned while processing",
            max_retries=max_retries,
            now=now,
        )
        recovered.append(job)

    if recovered:
        logger.warning("stale_jobs_recovered", count=len(recovered))
    return recovered
