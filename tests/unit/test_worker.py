"""Unit tests for the embedding worker pool.

Tests cover:
- Job completion with the composed text's content hash
- Transient failures retried, permanent failures failed fast
- Provider timeouts
- Per-job failure isolation and the concurrency bound
- Start/stop lifecycle, graceful drain and shutdown timeout
- Immediate re-embedding and status snapshots
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import numpy as np
import pytest

from contextlens.config import WorkerConfig
from contextlens.database.models.job import EmbeddingJob, JobStatus, ResourceType
from contextlens.database.queries.queue import QueueStats
from contextlens.embeddings.provider import EmbeddingResult
from contextlens.errors import (
    EmbeddingTimeoutError,
    EmptyContentError,
    ProviderUnavailableError,
    ResourceNotFoundError,
)
from contextlens.pipeline.content import ResourceText, content_hash
from contextlens.pipeline.worker import EmbeddingWorker


def _job(retry_count: int = 0) -> EmbeddingJob:
    return EmbeddingJob(
        id=uuid4(),
        resource_type=ResourceType.context,
        resource_id=uuid4(),
        priority=5,
        status=JobStatus.processing,
        retry_count=retry_count,
    )


def _result() -> EmbeddingResult:
    return EmbeddingResult(
        vector=np.array([0.6, 0.8], dtype=np.float32),
        model="test-model",
        backend="fake",
        duration_ms=1.5,
    )


@pytest.fixture
def queue() -> MagicMock:
    queue = MagicMock()
    queue.claim = AsyncMock(return_value=[])
    queue.complete_with_embedding = AsyncMock()
    queue.fail = AsyncMock()
    queue.store_embedding = AsyncMock()
    queue.recover_stale = AsyncMock(return_value=[])
    queue.stats = AsyncMock(return_value=QueueStats(pending=2, total=2))
    return queue


@pytest.fixture
def content_store() -> MagicMock:
    store = MagicMock()
    store.get_text = AsyncMock(return_value=ResourceText(title="Auth", content="Use OAuth2"))
    return store


@pytest.fixture
def provider() -> MagicMock:
    provider = MagicMock()
    provider.embed = AsyncMock(return_value=_result())
    return provider


def _worker(queue, content_store, provider, **overrides) -> EmbeddingWorker:
    settings = {"poll_interval_ms": 10, "retry_delay_ms": 250, "max_retries": 3}
    settings.update(overrides)
    return EmbeddingWorker(queue, content_store, provider, WorkerConfig(**settings))


class TestJobProcessing:
    """Test the outcome recorded for each claimed job."""

    @pytest.mark.asyncio
    async def test_success_stores_embedding(self, queue, content_store, provider) -> None:
        job = _job()
        queue.claim.return_value = [job]

        processed = await _worker(queue, content_store, provider, batch_size=7).run_cycle()

        assert processed == 1
        queue.claim.assert_awaited_once_with(7)
        provider.embed.assert_awaited_once_with("Auth\n\nUse OAuth2")
        kwargs = queue.complete_with_embedding.await_args.kwargs
        assert kwargs["content_hash"] == content_hash("Auth\n\nUse OAuth2")
        assert kwargs["metadata"]["backend"] == "fake"
        queue.fail.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, queue, content_store, provider) -> None:
        job = _job()
        queue.claim.return_value = [job]
        provider.embed.side_effect = ProviderUnavailableError({"ollama": ConnectionError("down")})

        await _worker(queue, content_store, provider).run_cycle()

        queue.fail.assert_awaited_once()
        args, kwargs = queue.fail.await_args
        assert args[0] is job
        assert args[1].startswith("ProviderUnavailableError")
        assert kwargs["max_retries"] == 3
        assert kwargs["retry_delay"] == timedelta(milliseconds=250)
        assert kwargs["permanent"] is False
        queue.complete_with_embedding.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_resource_fails_fast(self, queue, content_store, provider) -> None:
        queue.claim.return_value = [_job()]
        content_store.get_text.return_value = None

        await _worker(queue, content_store, provider).run_cycle()

        assert queue.fail.await_args.kwargs["permanent"] is True
        assert "ResourceNotFoundError" in queue.fail.await_args.args[1]
        provider.embed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_text_fails_fast(self, queue, content_store, provider) -> None:
        queue.claim.return_value = [_job()]
        content_store.get_text.return_value = ResourceText(title="   ")

        await _worker(queue, content_store, provider).run_cycle()

        assert queue.fail.await_args.kwargs["permanent"] is True
        assert "EmptyContentError" in queue.fail.await_args.args[1]

    @pytest.mark.asyncio
    async def test_permanent_error_retried_when_fail_fast_disabled(
        self, queue, content_store, provider
    ) -> None:
        queue.claim.return_value = [_job()]
        content_store.get_text.return_value = None

        await _worker(
            queue, content_store, provider, fail_fast_on_permanent=False
        ).run_cycle()

        assert queue.fail.await_args.kwargs["permanent"] is False

    @pytest.mark.asyncio
    async def test_timeout(self, queue, content_store, provider) -> None:
        queue.claim.return_value = [_job()]

        async def slow_embed(text: str) -> EmbeddingResult:
            await asyncio.sleep(10)
            return _result()

        provider.embed.side_effect = slow_embed

        await _worker(queue, content_store, provider, embed_timeout_seconds=0.01).run_cycle()

        assert queue.fail.await_args.args[1].startswith("EmbeddingTimeoutError")
        assert queue.fail.await_args.kwargs["permanent"] is False

    @pytest.mark.asyncio
    async def test_failure_isolated_per_job(self, queue, content_store, provider) -> None:
        good, bad = _job(), _job()
        queue.claim.return_value = [bad, good]

        async def get_text(resource_type, resource_id):
            if resource_id == bad.resource_id:
                return None
            return ResourceText(title="ok")

        content_store.get_text.side_effect = get_text

        processed = await _worker(queue, content_store, provider).run_cycle()

        assert processed == 2
        assert queue.fail.await_args.args[0] is bad
        assert queue.complete_with_embedding.await_args.args[0] is good

    @pytest.mark.asyncio
    async def test_resolve_error_does_not_escape(self, queue, content_store, provider) -> None:
        queue.claim.return_value = [_job()]
        provider.embed.side_effect = ProviderUnavailableError({})
        queue.fail.side_effect = RuntimeError("database gone")

        assert await _worker(queue, content_store, provider).run_cycle() == 1

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, queue, content_store, provider) -> None:
        queue.claim.return_value = [_job() for _ in range(6)]
        active = 0
        peak = 0

        async def tracked_embed(text: str) -> EmbeddingResult:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return _result()

        provider.embed.side_effect = tracked_embed

        await _worker(queue, content_store, provider, max_concurrency=2).run_cycle()

        assert peak == 2
        assert queue.complete_with_embedding.await_count == 6

    @pytest.mark.asyncio
    async def test_empty_queue(self, queue, content_store, provider) -> None:
        assert await _worker(queue, content_store, provider).run_cycle() == 0
        provider.embed.assert_not_awaited()


class TestLifecycle:
    """Test starting, draining and stopping the polling loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, queue, content_store, provider) -> None:
        worker = _worker(queue, content_store, provider)

        await worker.start()
        await asyncio.sleep(0.05)
        assert worker.is_running
        await worker.stop()

        assert not worker.is_running
        queue.recover_stale.assert_awaited_once()
        assert queue.claim.await_count >= 1

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, queue, content_store, provider) -> None:
        worker = _worker(queue, content_store, provider)
        await worker.start()
        try:
            with pytest.raises(RuntimeError, match="already running"):
                await worker.start()
        finally:
            await worker.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, queue, content_store, provider) -> None:
        await _worker(queue, content_store, provider).stop()

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_jobs(self, queue, content_store, provider) -> None:
        job = _job()
        queue.claim.side_effect = [[job]] + [[]] * 100
        started = asyncio.Event()

        async def slow_embed(text: str) -> EmbeddingResult:
            started.set()
            await asyncio.sleep(0.05)
            return _result()

        provider.embed.side_effect = slow_embed
        worker = _worker(queue, content_store, provider)

        await worker.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await worker.stop()

        queue.complete_with_embedding.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_timeout_abandons_jobs(self, queue, content_store, provider) -> None:
        queue.claim.side_effect = [[_job()]] + [[]] * 100
        started = asyncio.Event()

        async def stuck_embed(text: str) -> EmbeddingResult:
            started.set()
            await asyncio.sleep(10)
            return _result()

        provider.embed.side_effect = stuck_embed
        worker = _worker(
            queue,
            content_store,
            provider,
            embed_timeout_seconds=None,
            shutdown_timeout_seconds=0.05,
        )

        await worker.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await worker.stop()

        assert not worker.is_running
        queue.complete_with_embedding.assert_not_awaited()
        queue.fail.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_jobs_waiting_for_a_slot_count_as_in_flight(
        self, queue, content_store, provider
    ) -> None:
        queue.claim.side_effect = [[_job(), _job(), _job()]] + [[]] * 100
        started = asyncio.Event()

        async def stuck_embed(text: str) -> EmbeddingResult:
            started.set()
            await asyncio.sleep(10)
            return _result()

        provider.embed.side_effect = stuck_embed
        worker = _worker(
            queue,
            content_store,
            provider,
            batch_size=3,
            max_concurrency=1,
            embed_timeout_seconds=None,
            shutdown_timeout_seconds=0.05,
        )

        await worker.start()
        await asyncio.wait_for(started.wait(), timeout=1)

        assert worker.in_flight == 3
        assert provider.embed.await_count == 1

        await worker.stop()

        queue.complete_with_embedding.assert_not_awaited()
        queue.fail.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cycle_error_does_not_end_loop(self, queue, content_store, provider) -> None:
        queue.claim.side_effect = [RuntimeError("connection reset")] + [[]] * 100
        worker = _worker(queue, content_store, provider)

        await worker.start()
        await asyncio.sleep(0.05)
        assert worker.is_running
        await worker.stop()

        assert queue.claim.await_count >= 2


class TestAdministration:
    """Test immediate re-embedding and status reporting."""

    @pytest.mark.asyncio
    async def test_reembed_now(self, queue, content_store, provider) -> None:
        resource_id = uuid4()
        worker = _worker(queue, content_store, provider)

        await worker.reembed_now(ResourceType.template, resource_id)

        args, kwargs = queue.store_embedding.await_args
        assert args == (ResourceType.template, resource_id)
        assert kwargs["content_hash"] == content_hash("Auth\n\nUse OAuth2")
        queue.claim.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reembed_now_missing_resource(self, queue, content_store, provider) -> None:
        content_store.get_text.return_value = None
        with pytest.raises(ResourceNotFoundError):
            await _worker(queue, content_store, provider).reembed_now(
                ResourceType.context, uuid4()
            )

    @pytest.mark.asyncio
    async def test_reembed_now_empty_text(self, queue, content_store, provider) -> None:
        content_store.get_text.return_value = ResourceText()
        with pytest.raises(EmptyContentError):
            await _worker(queue, content_store, provider).reembed_now(
                ResourceType.context, uuid4()
            )

    @pytest.mark.asyncio
    async def test_reembed_now_timeout(self, queue, content_store, provider) -> None:
        async def slow_embed(text: str) -> EmbeddingResult:
            await asyncio.sleep(10)
            return _result()

        provider.embed.side_effect = slow_embed
        worker = _worker(queue, content_store, provider, embed_timeout_seconds=0.01)

        with pytest.raises(EmbeddingTimeoutError):
            await worker.reembed_now(ResourceType.context, uuid4())

    @pytest.mark.asyncio
    async def test_status(self, queue, content_store, provider) -> None:
        status = await _worker(
            queue, content_store, provider, max_concurrency=4, batch_size=20
        ).status()

        assert status.running is False
        assert status.in_flight == 0
        assert status.max_concurrency == 4
        assert status.batch_size == 20
        assert status.queue.pending == 2
