"""Read-only view of the content catalog consumed by retrieval.

Contexts, templates, usage records and team membership are owned by the
content store. Retrieval reads them through the Catalog protocol and applies
the visibility rule defined here.
"""

from __future__ import annotations

import enum
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Protocol
from uuid import UUID

from contextlens.database.models.base import utc_now
from contextlens.database.models.job import ResourceType
from contextlens.pipeline.content import ResourceText


class Visibility(str, enum.Enum):
    """Who may see a catalog item besides its owner."""

    PRIVATE = "private"
    TEAM = "team"
    PUBLIC = "public"


@dataclass(frozen=True)
class CatalogItem:
    """A context or template as seen by retrieval.

    Attributes:
        id: Item identifier
        resource_type: context or template
        name: Display name
        description: Short description
        content: Main body text
        owner_id: Owning user
        team_id: Team the item is shared with, if any
        visibility: private, team or public
        usage_count: Usage counter maintained by the content store
        deleted_at: Soft-deletion timestamp
        updated_at: Last modification timestamp
    """

    id: UUID
    resource_type: ResourceType
    name: str
    owner_id: UUID | None = None
    description: str | None = None
    content: str | None = None
    team_id: UUID | None = None
    visibility: Visibility = Visibility.PRIVATE
    usage_count: int = 0
    deleted_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def text(self) -> ResourceText:
        """Text fields used for embedding and lexical ranking."""
        return ResourceText(title=self.name, description=self.description, content=self.content)


@dataclass(frozen=True)
class UsageRecord:
    """A user applied a context within a template, optionally rating it."""

    id: UUID
    user_id: UUID
    template_id: UUID
    context_id: UUID
    rating: float | None = None
    created_at: datetime = field(default_factory=utc_now)


def is_visible_to(
    item: CatalogItem,
    caller_id: UUID | None,
    caller_team_ids: set[UUID] | frozenset[UUID] = frozenset(),
) -> bool:
    """Apply the visibility rule to a live item.

    Visible when the caller is unspecified, owns the item, the item is
    public, or the item belongs to one of the caller's teams. Soft-deleted
    items are never visible.
    """
    if item.is_deleted:
        return False
    if caller_id is None:
        return True
    if item.owner_id == caller_id or item.visibility is Visibility.PUBLIC:
        return True
    return item.team_id is not None and item.team_id in caller_team_ids


class Catalog(Protocol):
    """Protocol for reading catalog items, usage and team membership."""

    async def list_items(self, resource_type: ResourceType) -> list[CatalogItem]:
        """All items of a type, including soft-deleted ones."""
        ...

    async def get_item(
        self, resource_type: ResourceType, item_id: UUID
    ) -> CatalogItem | None:
        """A single item, or None if it does not exist."""
        ...

    async def visible_items(
        self, resource_type: ResourceType, caller_id: UUID | None
    ) -> list[CatalogItem]:
        """Live items of a type that pass the visibility rule for the caller."""
        ...

    async def team_ids(self, user_id: UUID) -> set[UUID]:
        """Teams the user belongs to."""
        ...

    async def usage_records(
        self,
        user_id: UUID | None = None,
        context_ids: Iterable[UUID] | None = None,
        template_ids: Iterable[UUID] | None = None,
    ) -> list[UsageRecord]:
        """Usage records, optionally narrowed to a user, contexts or templates."""
        ...


class InMemoryCatalog:
    """Catalog and content store backed by dictionaries.

    Suitable for single-process deployments and tests. Implements both the
    Catalog protocol and the pipeline's ContentStore protocol.
    """

    def __init__(self) -> None:
        self._items: dict[tuple[ResourceType, UUID], CatalogItem] = {}
        self._teams: dict[UUID, set[UUID]] = defaultdict(set)
        self._usage: list[UsageRecord] = []

    def add_item(self, item: CatalogItem) -> None:
        self._items[(item.resource_type, item.id)] = item

    def delete_item(self, resource_type: ResourceType, item_id: UUID) -> None:
        """Soft-delete an item."""
        key = (resource_type, item_id)
        self._items[key] = replace(self._items[key], deleted_at=utc_now())

    def add_team_member(self, team_id: UUID, user_id: UUID) -> None:
        self._teams[user_id].add(team_id)

    def add_usage(self, usage: UsageRecord) -> None:
        self._usage.append(usage)

    async def list_items(self, resource_type: ResourceType) -> list[CatalogItem]:
        return [item for (rt, _), item in self._items.items() if rt is resource_type]

    async def get_item(
        self, resource_type: ResourceType, item_id: UUID
    ) -> CatalogItem | None:
        return self._items.get((resource_type, item_id))

    async def visible_items(
        self, resource_type: ResourceType, caller_id: UUID | None
    ) -> list[CatalogItem]:
        teams = await self.team_ids(caller_id) if caller_id is not None else set()
        return [
            item
            for item in await self.list_items(resource_type)
            if is_visible_to(item, caller_id, teams)
        ]

    async def team_ids(self, user_id: UUID) -> set[UUID]:
        return set(self._teams.get(user_id, set()))

    async def usage_records(
        self,
        user_id: UUID | None = None,
        context_ids: Iterable[UUID] | None = None,
        template_ids: Iterable[UUID] | None = None,
    ) -> list[UsageRecord]:
        contexts = set(context_ids) if context_ids is not None else None
        templates = set(template_ids) if template_ids is not None else None
        return [
            usage
            for usage in self._usage
            if (user_id is None or usage.user_id == user_id)
            and (contexts is None or usage.context_id in contexts)
            and (templates is None or usage.template_id in templates)
        ]

    async def get_text(
        self, resource_type: ResourceType, resource_id: UUID
    ) -> ResourceText | None:
        item = self._items.get((resource_type, resource_id))
        if item is None or item.is_deleted:
            return None
        return item.text()
