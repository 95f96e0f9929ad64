"""Embedding backends and the fallback provider.

Backends: Ollama (primary), OpenAI (secondary) and an optional in-process
sentence-transformers model. EmbeddingProvider tries them in order.
"""

from contextlens.embeddings.local import LocalEmbeddingBackend, LocalModelError
from contextlens.embeddings.ollama_client import (
    OllamaAPIError,
    OllamaClient,
    OllamaClientError,
    OllamaConnectionError,
    OllamaTimeoutError,
)
from contextlens.embeddings.openai_client import OpenAIEmbeddingClient, OpenAIEmbeddingError
from contextlens.embeddings.provider import (
    EmbeddingBackend,
    EmbeddingProvider,
    EmbeddingResult,
    normalize_embedding,
)

__all__ = [
    # Provider
    "EmbeddingBackend",
    "EmbeddingProvider",
    "EmbeddingResult",
    "normalize_embedding",
    # Ollama client
    "OllamaClient",
    "OllamaClientError",
    "OllamaTimeoutError",
    "OllamaConnectionError",
    "OllamaAPIError",
    # OpenAI client
    "OpenAIEmbeddingClient",
    "OpenAIEmbeddingError",
    # Local model
    "LocalEmbeddingBackend",
    "LocalModelError",
]
