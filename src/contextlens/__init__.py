"""contextlens - Embedding pipeline and semantic retrieval for knowledge contexts.

This package keeps a vector representation of every context and template
fresh through a change-driven job queue and an asynchronous worker pool, and
answers similarity, hybrid search and recommendation queries over the stored
vectors combined with usage statistics.
"""

__version__ = "0.1.0"
