"""Database layer for contextlens.

This module handles database connections, session management, and the
SQLAlchemy models for the embedding job queue and vector store
(PostgreSQL with pgvector in production).

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    Base: SQLAlchemy declarative base for all models.
"""

from contextlens.database.connection import get_engine, get_session_factory
from contextlens.database.models import (
    Base,
    EmbeddingJob,
    EmbeddingRecord,
    JobStatus,
    ResourceType,
    TimestampMixin,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "Base",
    "TimestampMixin",
    "EmbeddingJob",
    "EmbeddingRecord",
    "JobStatus",
    "ResourceType",
]
