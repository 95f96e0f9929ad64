"""Initial schema for contextlens.

Creates the embedding_jobs queue table and the embeddings table, and enables
the pgvector extension. The HNSW index covers vectors of the configured
embedding model, cast to the configured dimension.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects.postgresql import JSONB

from contextlens.config import load_config

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    job_status = sa.Enum(
        "pending", "processing", "completed", "failed",
        name="jobstatus",
    )
    job_status.create(op.get_bind(), checkfirst=True)

    resource_type = sa.Enum("context", "template", name="resourcetype")
    resource_type.create(op.get_bind(), checkfirst=True)

    # Embedding job queue
    op.create_table(
        "embedding_jobs",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column(
            "resource_type",
            sa.Enum("context", "template", name="resourcetype", create_type=False),
            nullable=False,
        ),
        sa.Column("resource_id", sa.Uuid(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "processing", "completed", "failed",
                name="jobstatus",
                create_type=False,
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("available_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("priority BETWEEN 1 AND 10", name="ck_embedding_jobs_priority"),
    )

    # At most one pending job per resource
    op.create_index(
        "uq_embedding_jobs_pending",
        "embedding_jobs",
        ["resource_type", "resource_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index(
        "ix_embedding_jobs_claim",
        "embedding_jobs",
        ["status", "priority", "created_at"],
    )
    op.create_index(
        "ix_embedding_jobs_resource",
        "embedding_jobs",
        ["resource_type", "resource_id"],
    )

    # Stored vectors, one per resource and model
    op.create_table(
        "embeddings",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("resource_id", sa.Uuid(), nullable=False),
        sa.Column(
            "resource_type",
            sa.Enum("context", "template", name="resourcetype", create_type=False),
            nullable=False,
        ),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("vector", Vector(), nullable=False),
        sa.Column("content_hash", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("resource_id", "model", name="uq_embeddings_resource_model"),
    )

    op.create_index(
        "ix_embeddings_model_type",
        "embeddings",
        ["model", "resource_type"],
    )

    # HNSW needs a fixed dimension; index only the configured model's vectors
    embedding = load_config().embedding
    model = embedding.model.replace("'", "''")
    op.execute(
        "CREATE INDEX ix_embeddings_vector_hnsw ON embeddings "
        f"USING hnsw ((vector::vector({int(embedding.dimension)})) vector_cosine_ops) "
        f"WHERE model = '{model}'"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_embeddings_vector_hnsw")
    op.drop_index("ix_embeddings_model_type", table_name="embeddings")
    op.drop_table("embeddings")

    op.drop_index("ix_embedding_jobs_resource", table_name="embedding_jobs")
    op.drop_index("ix_embedding_jobs_claim", table_name="embedding_jobs")
    op.drop_index("uq_embedding_jobs_pending", table_name="embedding_jobs")
    op.drop_table("embedding_jobs")

    sa.Enum(name="resourcetype").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="jobstatus").drop(op.get_bind(), checkfirst=True)
