"""Embedding worker pool.

This module provides a worker that drives embedding jobs from pending to a
terminal or retry state. Each polling cycle claims a batch of jobs, embeds
them concurrently up to ``max_concurrency`` and resolves every job on its
own row, so one bad job cannot halt the batch.

The loop re-polls immediately after a cycle that claimed jobs and sleeps
for the poll interval after an empty one.

Example usage:
    >>> worker = EmbeddingWorker(
    ...     queue=JobQueue(session_factory, model="all-MiniLM-L6-v2"),
    ...     content_store=catalog,
    ...     provider=provider,
    ...     config=WorkerConfig(max_concurrency=4),
    ... )
    >>> await worker.start()
    >>> ...
    >>> await worker.stop()
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import UUID

import structlog
from pydantic import BaseModel

from contextlens.config import WorkerConfig
from contextlens.database.models.embedding import EmbeddingRecord
from contextlens.database.models.job import EmbeddingJob, ResourceType
from contextlens.embeddings.provider import EmbeddingProvider, EmbeddingResult
from contextlens.errors import (
    EmbeddingPipelineError,
    EmbeddingTimeoutError,
    EmptyContentError,
    ResourceNotFoundError,
)
from contextlens.logging import bind_job_context, clear_job_context
from contextlens.pipeline.content import ContentStore, compose_embedding_text, content_hash
from contextlens.pipeline.queue import JobQueue, QueueStats

logger = structlog.get_logger(__name__)


class WorkerStatus(BaseModel):
    """Snapshot of a worker and the queue it serves."""

    running: bool
    in_flight: int
    max_concurrency: int
    batch_size: int
    poll_interval_ms: int
    queue: QueueStats


class EmbeddingWorker:
    """Background worker pool for the embedding job queue.

    Attributes:
        queue: Job queue to claim from and resolve into
        content_store: Source of resource text
        provider: Embedding provider
        config: Worker configuration
    """

    def __init__(
        self,
        queue: JobQueue,
        content_store: ContentStore,
        provider: EmbeddingProvider,
        config: WorkerConfig,
    ) -> None:
        self.queue = queue
        self.content_store = content_store
        self.provider = provider
        self.config = config

        self._semaphore = asyncio.Semaphore(config.max_concurrency)
        self._in_flight: set[asyncio.Task[None]] = set()
        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._running = False
        self._logger = logger.bind(component="EmbeddingWorker")

        self._logger.info(
            "embedding_worker_initialized",
            batch_size=config.batch_size,
            max_concurrency=config.max_concurrency,
            poll_interval_ms=config.poll_interval_ms,
            max_retries=config.max_retries,
        )

    @property
    def is_running(self) -> bool:
        """Whether the polling loop is active."""
        return self._running

    @property
    def in_flight(self) -> int:
        """Number of jobs currently being processed."""
        return len(self._in_flight)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the polling loop as a background task.

        Raises:
            RuntimeError: If the worker is already running.
        """
        if self._loop_task is not None:
            raise RuntimeError("EmbeddingWorker is already running")
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self.run(), name="embedding-worker")

    async def stop(self) -> None:
        """Stop claiming jobs and wait for in-flight jobs to finish.

        Waits up to ``shutdown_timeout_seconds``. Jobs still running after
        that are cancelled and their rows stay in processing until a stale
        job recovery sweep requeues them.

        Safe to call if the worker is not running.
        """
        self._stop_event.set()
        if self._loop_task is None:
            return

        self._logger.info("embedding_worker_stopping", in_flight=self.in_flight)
        try:
            await asyncio.wait_for(
                asyncio.shield(self._loop_task),
                timeout=self.config.shutdown_timeout_seconds,
            )
        except asyncio.TimeoutError:
            abandoned = self.in_flight
            self._logger.warning(
                "embedding_worker_shutdown_timeout",
                abandoned_jobs=abandoned,
                timeout_seconds=self.config.shutdown_timeout_seconds,
            )
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        finally:
            self._loop_task = None

    async def run(self) -> None:
        """Run the polling loop until stop() is called.

        Errors raised by a cycle are logged and never end the loop.
        """
        self._running = True
        self._logger.info("embedding_worker_started")

        try:
            await self._recover_stale_jobs()

            while not self._stop_event.is_set():
                try:
                    processed = await self.run_cycle()
                except Exception as e:
                    self._logger.error(
                        "embedding_worker_cycle_error",
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    processed = 0

                if processed:
                    # Drain the backlog without sleeping
                    await asyncio.sleep(0)
                    continue

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.config.poll_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self._logger.info("embedding_worker_stopped")

    async def _recover_stale_jobs(self) -> None:
        try:
            recovered = await self.queue.recover_stale(
                timedelta(seconds=self.config.stale_after_seconds),
                max_retries=self.config.max_retries,
            )
        except Exception as e:
            self._logger.error("stale_job_recovery_failed", error=str(e))
            return
        if recovered:
            self._logger.warning("stale_jobs_requeued", count=len(recovered))

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> int:
        """Claim one batch of jobs and process it.

        Returns:
            Number of jobs claimed (0 if none were available, the worker is
            stopping, or concurrency is saturated).
        """
        if self._stop_event.is_set():
            return 0

        in_flight = self.in_flight
        if in_flight >= self.config.max_concurrency:
            return 0

        jobs = await self.queue.claim(self.config.batch_size - in_flight)
        if not jobs:
            self._logger.debug("embedding_queue_empty")
            return 0

        self._logger.info("embedding_batch_claimed", count=len(jobs))

        tasks = []
        for job in jobs:
            task = asyncio.create_task(self._process_job(job), name=f"embed-job-{job.id}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            tasks.append(task)

        await asyncio.gather(*tasks)

        self._logger.info("embedding_batch_completed", count=len(jobs))
        return len(jobs)

    async def _process_job(self, job: EmbeddingJob) -> None:
        """Process one job end to end and record the outcome on its row."""
        async with self._semaphore:
            bind_job_context(job_id=str(job.id), resource_id=str(job.resource_id))
            try:
                self._logger.debug(
                    "job_processing",
                    resource_type=job.resource_type.value,
                    retry_count=job.retry_count,
                )
                text = await self._load_text(job.resource_type, job.resource_id)
                result = await self._generate(text)
                await self.queue.complete_with_embedding(
                    job,
                    vector=result.vector,
                    content_hash=content_hash(text),
                    metadata=result.metadata(),
                )
            except Exception as e:
                await self._record_failure(job, e)
            finally:
                clear_job_context()

    async def _record_failure(self, job: EmbeddingJob, error: Exception) -> None:
        permanent = (
            isinstance(error, EmbeddingPipelineError)
            and error.permanent
            and self.config.fail_fast_on_permanent
        )
        error_message = f"{type(error).__name__}: {error}"
        self._logger.warning(
            "job_attempt_failed",
            error=error_message,
            permanent=permanent,
            retry_count=job.retry_count,
        )
        try:
            await self.queue.fail(
                job,
                error_message,
                max_retries=self.config.max_retries,
                retry_delay=timedelta(milliseconds=self.config.retry_delay_ms),
                permanent=permanent,
            )
        except Exception as e:
            # The row stays in processing until stale job recovery
            self._logger.error(
                "job_resolve_failed",
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _load_text(self, resource_type: ResourceType, resource_id: UUID) -> str:
        resource = await self.content_store.get_text(resource_type, resource_id)
        if resource is None:
            raise ResourceNotFoundError(resource_type.value, str(resource_id))
        text = compose_embedding_text(resource)
        if not text.strip():
            raise EmptyContentError(f"{resource_type.value} {resource_id} has no text to embed")
        return text

    async def _generate(self, text: str) -> EmbeddingResult:
        timeout = self.config.embed_timeout_seconds
        if timeout is None:
            return await self.provider.embed(text)
        try:
            return await asyncio.wait_for(self.provider.embed(text), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise EmbeddingTimeoutError(timeout) from e

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    async def reembed_now(
        self, resource_type: ResourceType, resource_id: UUID
    ) -> EmbeddingRecord:
        """Embed a resource immediately, bypassing the queue.

        Args:
            resource_type: Kind of resource
            resource_id: Resource identifier

        Returns:
            The stored EmbeddingRecord.

        Raises:
            ResourceNotFoundError: If the resource does not exist
            EmptyContentError: If the resource has no text
            EmbeddingPipelineError: If embedding generation fails
        """
        text = await self._load_text(resource_type, resource_id)
        result = await self._generate(text)
        record = await self.queue.store_embedding(
            resource_type,
            resource_id,
            vector=result.vector,
            content_hash=content_hash(text),
            metadata=result.metadata(),
        )
        self._logger.info(
            "resource_reembedded",
            resource_type=resource_type.value,
            resource_id=str(resource_id),
            backend=result.backend,
        )
        return record

    async def status(self) -> WorkerStatus:
        """Current worker state and queue statistics."""
        return WorkerStatus(
            running=self.is_running,
            in_flight=self.in_flight,
            max_concurrency=self.config.max_concurrency,
            batch_size=self.config.batch_size,
            poll_interval_ms=self.config.poll_interval_ms,
            queue=await self.queue.stats(),
        )
