"""Database query functions for contextlens.

This module provides async query functions for the tables owned by the
embedding pipeline:
- Job queue: enqueue, atomic claim, resolve, maintenance
- Embedding records: atomic upsert and vector reads
"""

from contextlens.database.queries.embedding import (
    get_content_hashes,
    get_embedding,
    get_vectors,
    upsert_embedding,
)
from contextlens.database.queries.queue import (
    QueueStats,
    claim_jobs,
    clear_jobs,
    complete_job,
    enqueue_job,
    fail_job,
    get_job,
    get_queue_stats,
    list_jobs,
    purge_terminal_jobs,
    remove_job,
    requeue_stale_jobs,
    retry_job,
)

__all__ = [
    # Embedding records
    "upsert_embedding",
    "get_embedding",
    "get_vectors",
    "get_content_hashes",
    # Job queue
    "QueueStats",
    "enqueue_job",
    "claim_jobs",
    "complete_job",
    "fail_job",
    "get_job",
    "list_jobs",
    "get_queue_stats",
    "retry_job",
    "remove_job",
    "clear_jobs",
    "purge_terminal_jobs",
    "requeue_stale_jobs",
]
