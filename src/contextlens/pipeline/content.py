"""Resource text composition and content fingerprinting.

The worker embeds the concatenation of a resource's title, description and
content. The same composed text is hashed so a stored embedding can later
be compared against the current text to detect staleness.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from contextlens.database.models.job import ResourceType

PART_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class ResourceText:
    """Text fields of a resource, as returned by the content store.

    Attributes:
        title: Resource name or title
        description: Short description
        content: Main body text
    """

    title: str | None = None
    description: str | None = None
    content: str | None = None


class ContentStore(Protocol):
    """Protocol for reading resource text from the content store."""

    async def get_text(
        self, resource_type: ResourceType, resource_id: UUID
    ) -> ResourceText | None:
        """Fetch the current text of a resource.

        Args:
            resource_type: Kind of resource
            resource_id: Resource identifier

        Returns:
            The resource's text fields, or None if it does not exist
        """
        ...


def compose_embedding_text(resource: ResourceText) -> str:
    """Join the non-empty text fields of a resource with blank lines.

    Args:
        resource: Resource text fields

    Returns:
        Composed text (empty if every field is empty or None)
    """
    parts = [resource.title, resource.description, resource.content]
    return PART_SEPARATOR.join(part for part in parts if part)


def content_hash(text: str) -> str:
    """Return the SHA-256 hex digest of the UTF-8 encoded text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
