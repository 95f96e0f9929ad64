"""SQLAlchemy ORM models for contextlens.

This module defines the tables owned by the embedding pipeline: the job
queue and the vector store.

All models use SQLAlchemy 2.0 declarative style with Mapped[] type annotations.
"""

from contextlens.database.models.base import Base, TimestampMixin, utc_now
from contextlens.database.models.embedding import EmbeddingRecord
from contextlens.database.models.job import (
    TERMINAL_STATUSES,
    EmbeddingJob,
    JobStatus,
    ResourceType,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "utc_now",
    "EmbeddingJob",
    "EmbeddingRecord",
    "JobStatus",
    "ResourceType",
    "TERMINAL_STATUSES",
]
