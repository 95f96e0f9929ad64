"""Similarity search, hybrid search and usage-based rankings."""

from contextlens.retrieval.catalog import (
    Catalog,
    CatalogItem,
    InMemoryCatalog,
    UsageRecord,
    Visibility,
    is_visible_to,
)
from contextlens.retrieval.service import (
    Association,
    EffectivenessResult,
    HybridResult,
    Recommendation,
    RetrievalService,
    SimilarItem,
)
from contextlens.retrieval.sql_catalog import SqlCatalog, content_metadata
from contextlens.retrieval.text_rank import text_rank, tokenize

__all__ = [
    "Association",
    "Catalog",
    "CatalogItem",
    "EffectivenessResult",
    "HybridResult",
    "InMemoryCatalog",
    "Recommendation",
    "RetrievalService",
    "SimilarItem",
    "SqlCatalog",
    "UsageRecord",
    "Visibility",
    "content_metadata",
    "is_visible_to",
    "text_rank",
    "tokenize",
]
