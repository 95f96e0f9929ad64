"""Embedding job model for contextlens.

Defines the EmbeddingJob table together with the JobStatus and ResourceType
enums. A job is created whenever a resource's text changes and is driven
through ``pending -> processing -> completed | pending (retry) | failed``
by the embedding worker.

At most one pending job exists per resource, enforced by a partial unique
index. Completed and failed rows are kept as history until purged.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from contextlens.database.models.base import Base, TimestampMixin, utc_now

PENDING_ONLY = text("status = 'pending'")


class JobStatus(enum.Enum):
    """State machine for embedding job lifecycle.

    States:
        pending: Waiting to be claimed by a worker.
        processing: Claimed by a worker, embedding in progress.
        completed: Embedding stored successfully.
        failed: Retry budget exhausted or permanent error.
    """

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed})


class ResourceType(enum.Enum):
    """Kinds of resource whose text is embedded."""

    context = "context"
    template = "template"


class EmbeddingJob(TimestampMixin, Base):
    """A queued request to (re)embed one resource.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        resource_type: Kind of resource to embed.
        resource_id: Identifier of the resource in the content store.
        priority: 1 (highest) to 10 (lowest).
        status: Current state in the job lifecycle.
        retry_count: Number of failed attempts that were retried.
        error_message: Error text of the last failed attempt.
        available_at: The job cannot be claimed before this instant.
        created_at: Row creation timestamp (from TimestampMixin).
        updated_at: Last modification timestamp (from TimestampMixin).
        started_at: Timestamp of the most recent claim.
        completed_at: Timestamp when the job reached a terminal state.
    """

    __tablename__ = "embedding_jobs"
    __table_args__ = (
        CheckConstraint("priority BETWEEN 1 AND 10", name="ck_embedding_jobs_priority"),
        Index(
            "uq_embedding_jobs_pending",
            "resource_type",
            "resource_id",
            unique=True,
            postgresql_where=PENDING_ONLY,
            sqlite_where=PENDING_ONLY,
        ),
        Index("ix_embedding_jobs_claim", "status", "priority", "created_at"),
        Index("ix_embedding_jobs_resource", "resource_type", "resource_id"),
    )

    resource_type: Mapped[ResourceType] = mapped_column(nullable=False)
    resource_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[JobStatus] = mapped_column(
        default=JobStatus.pending,
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def is_terminal(self) -> bool:
        """True once the job is completed or failed."""
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return (
            f"<EmbeddingJob {self.id} {self.resource_type.value}:{self.resource_id} "
            f"status={self.status.value} retries={self.retry_count}>"
        )
