"""Embedding record model for contextlens.

Defines the EmbeddingRecord table holding one vector per resource and
model. Records are only ever written through an upsert keyed by
``(resource_id, model)``, so a vector and the content hash of the text
that produced it are always replaced together.
"""

from __future__ import annotations

import uuid
from typing import Any

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, Index, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from contextlens.database.models.base import Base, TimestampMixin
from contextlens.database.models.job import ResourceType


class EmbeddingRecord(TimestampMixin, Base):
    """Stored vector for one resource under one embedding model.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        resource_id: Identifier of the embedded resource.
        resource_type: Kind of the embedded resource.
        model: Identifier of the embedding model that produced the vector.
        vector: Embedding vector (dimension fixed per model).
        content_hash: SHA-256 hex digest of the text that was embedded.
        generation_metadata: Free-form generation details such as
            generation_time_ms and the backend that served the request.
            Stored in the ``metadata`` column.
        created_at: Row creation timestamp (from TimestampMixin).
        updated_at: Last upsert timestamp (from TimestampMixin).
    """

    __tablename__ = "embeddings"
    __table_args__ = (
        UniqueConstraint("resource_id", "model", name="uq_embeddings_resource_model"),
        Index("ix_embeddings_model_type", "model", "resource_type"),
    )

    resource_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    resource_type: Mapped[ResourceType] = mapped_column(nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    vector = mapped_column(Vector(), nullable=False)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    generation_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=dict,
    )
