"""Change-driven enqueueing of embedding jobs.

The content store calls :meth:`Enqueuer.on_content_changed` after it commits
an insert or an update. A job is enqueued for every new resource and for
updates whose text actually changed. Duplicate requests for a resource that
already has a pending job are silently absorbed by the queue.
"""

from __future__ import annotations

from collections.abc import Mapping
from uuid import UUID

import structlog

from contextlens.database.models.job import ResourceType
from contextlens.database.queries.queue import DEFAULT_PRIORITY, validate_priority
from contextlens.pipeline.content import ResourceText, compose_embedding_text, content_hash
from contextlens.pipeline.queue import JobQueue

logger = structlog.get_logger(__name__)


class Enqueuer:
    """Turns content-store change notifications into queue jobs.

    Attributes:
        queue: Job queue to enqueue into
    """

    def __init__(self, queue: JobQueue) -> None:
        self.queue = queue
        self.logger = logger.bind(component="Enqueuer")

    async def on_content_changed(
        self,
        resource_type: ResourceType,
        resource_id: UUID,
        is_new: bool,
        previous_text: str | None = None,
        new_text: str | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> bool:
        """React to a committed insert or update of a resource.

        Updates are compared by value only when both texts are given; an
        update notification without them counts as a text change.

        Args:
            resource_type: Kind of resource that changed
            resource_id: Identifier of the resource
            is_new: True for an insert, False for an update
            previous_text: Text before the update (ignored for inserts)
            new_text: Text after the update (ignored for inserts)
            priority: Job priority, 1 (highest) to 10 (lowest)

        Returns:
            True if a new job was enqueued, False if the text was unchanged
            or a job was already pending.

        Raises:
            ValueError: If priority is outside 1..10.
        """
        validate_priority(priority)

        texts_given = previous_text is not None and new_text is not None
        if not is_new and texts_given and previous_text == new_text:
            self.logger.debug(
                "content_unchanged_skipped",
                resource_type=resource_type.value,
                resource_id=str(resource_id),
            )
            return False

        job_id = await self.queue.enqueue(resource_type, resource_id, priority)
        return job_id is not None

    async def enqueue_reembed(
        self,
        resource_type: ResourceType,
        resource_id: UUID,
        priority: int = DEFAULT_PRIORITY,
    ) -> bool:
        """Enqueue a job without change detection.

        Returns:
            True if a new job was enqueued, False if one was already pending.
        """
        job_id = await self.queue.enqueue(resource_type, resource_id, priority)
        self.logger.info(
            "reembed_requested",
            resource_type=resource_type.value,
            resource_id=str(resource_id),
            enqueued=job_id is not None,
        )
        return job_id is not None

    async def enqueue_stale(
        self,
        resource_type: ResourceType,
        resources: Mapping[UUID, ResourceText],
        priority: int = DEFAULT_PRIORITY,
    ) -> list[UUID]:
        """Enqueue resources whose stored embedding is missing or outdated.

        A resource is stale when it has no embedding for the queue's model,
        or when the stored content hash differs from the hash of its current
        composed text. Resources with empty text are skipped.

        Args:
            resource_type: Kind of the given resources
            resources: Current text of each resource, keyed by ID
            priority: Job priority for the enqueued jobs

        Returns:
            IDs of resources for which a new job was enqueued.
        """
        validate_priority(priority)
        stored = await self.queue.content_hashes(resources.keys())

        enqueued: list[UUID] = []
        for resource_id, resource in resources.items():
            text = compose_embedding_text(resource)
            if not text.strip():
                continue
            if stored.get(resource_id) == content_hash(text):
                continue
            if await self.queue.enqueue(resource_type, resource_id, priority) is not None:
                enqueued.append(resource_id)

        self.logger.info(
            "stale_resources_enqueued",
            resource_type=resource_type.value,
            checked=len(resources),
            enqueued=len(enqueued),
        )
        return enqueued
