"""SQL adapter for the content store's tables.

The tables below belong to the content store and are declared on their own
MetaData so migrations of this package never create or alter them. The
adapter implements the Catalog protocol for retrieval and the ContentStore
protocol for the embedding worker.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    Uuid,
    or_,
    select,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contextlens.database.models.job import ResourceType
from contextlens.pipeline.content import ResourceText
from contextlens.retrieval.catalog import CatalogItem, UsageRecord, Visibility

logger = structlog.get_logger(__name__)

content_metadata = MetaData()


def _item_table(name: str) -> Table:
    return Table(
        name,
        content_metadata,
        Column("id", Uuid, primary_key=True),
        Column("user_id", Uuid, nullable=True),
        Column("team_id", Uuid, nullable=True),
        Column("name", String(255), nullable=False),
        Column("description", Text, nullable=True),
        Column("content", Text, nullable=True),
        Column("visibility", String(20), nullable=False, default="private"),
        Column("usage_count", Integer, nullable=False, default=0),
        Column("deleted_at", DateTime(timezone=True), nullable=True),
        Column("updated_at", DateTime(timezone=True), nullable=True),
    )


context_layers = _item_table("context_layers")
templates = _item_table("templates")

usage_relationships = Table(
    "usage_relationships",
    content_metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", Uuid, nullable=False),
    Column("template_id", Uuid, nullable=False),
    Column("context_id", Uuid, nullable=False),
    Column("rating", Float, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

team_members = Table(
    "team_members",
    content_metadata,
    Column("team_id", Uuid, primary_key=True),
    Column("user_id", Uuid, primary_key=True),
)

ITEM_TABLES: dict[ResourceType, Table] = {
    ResourceType.context: context_layers,
    ResourceType.template: templates,
}


def _row_to_item(row: Any, resource_type: ResourceType) -> CatalogItem:
    try:
        visibility = Visibility(row.visibility)
    except ValueError:
        logger.warning("unknown_visibility", item_id=str(row.id), visibility=row.visibility)
        visibility = Visibility.PRIVATE
    return CatalogItem(
        id=row.id,
        resource_type=resource_type,
        name=row.name,
        description=row.description,
        content=row.content,
        owner_id=row.user_id,
        team_id=row.team_id,
        visibility=visibility,
        usage_count=row.usage_count or 0,
        deleted_at=row.deleted_at,
        updated_at=row.updated_at,
    )


class SqlCatalog:
    """Catalog and content store over the content store's database tables.

    Attributes:
        session_factory: Factory producing sessions on the content database
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def list_items(self, resource_type: ResourceType) -> list[CatalogItem]:
        table = ITEM_TABLES[resource_type]
        async with self.session_factory() as session:
            result = await session.execute(select(table))
            return [_row_to_item(row, resource_type) for row in result.all()]

    async def get_item(
        self, resource_type: ResourceType, item_id: UUID
    ) -> CatalogItem | None:
        table = ITEM_TABLES[resource_type]
        async with self.session_factory() as session:
            result = await session.execute(select(table).where(table.c.id == item_id))
            row = result.one_or_none()
        return _row_to_item(row, resource_type) if row is not None else None

    async def visible_items(
        self, resource_type: ResourceType, caller_id: UUID | None
    ) -> list[CatalogItem]:
        """Live items the caller may see, filtered in the database.

        Matches ``is_visible_to``: the caller owns the item, it is public, or
        it belongs to one of the caller's teams.
        """
        table = ITEM_TABLES[resource_type]
        query = select(table).where(table.c.deleted_at.is_(None))
        if caller_id is not None:
            caller_teams = select(team_members.c.team_id).where(
                team_members.c.user_id == caller_id
            )
            query = query.where(
                or_(
                    table.c.user_id == caller_id,
                    table.c.visibility == Visibility.PUBLIC.value,
                    table.c.team_id.in_(caller_teams),
                )
            )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [_row_to_item(row, resource_type) for row in result.all()]

    async def team_ids(self, user_id: UUID) -> set[UUID]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(team_members.c.team_id).where(team_members.c.user_id == user_id)
            )
            return set(result.scalars().all())

    async def usage_records(
        self,
        user_id: UUID | None = None,
        context_ids: Iterable[UUID] | None = None,
        template_ids: Iterable[UUID] | None = None,
    ) -> list[UsageRecord]:
        query = select(usage_relationships)
        if user_id is not None:
            query = query.where(usage_relationships.c.user_id == user_id)
        if context_ids is not None:
            query = query.where(usage_relationships.c.context_id.in_(list(context_ids)))
        if template_ids is not None:
            query = query.where(usage_relationships.c.template_id.in_(list(template_ids)))
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [
                UsageRecord(
                    id=row.id,
                    user_id=row.user_id,
                    template_id=row.template_id,
                    context_id=row.context_id,
                    rating=row.rating,
                    created_at=row.created_at,
                )
                for row in result.all()
            ]

    async def get_text(
        self, resource_type: ResourceType, resource_id: UUID
    ) -> ResourceText | None:
        """Current text of a live item; None if missing or soft-deleted."""
        item = await self.get_item(resource_type, resource_id)
        if item is None or item.is_deleted:
            return None
        return item.text()
