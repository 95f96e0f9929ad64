"""Embedding pipeline: change-driven enqueue, job queue and worker pool.

Import from the submodules directly, e.g.
``from contextlens.pipeline.worker import EmbeddingWorker``.
"""
