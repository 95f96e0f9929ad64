"""Embedding generation with an ordered fallback chain of backends.

EmbeddingProvider tries each backend in turn until one succeeds. Results
are L2-normalized and checked against the model's fixed dimension so every
stored vector is directly comparable with every other.

The provider is constructed once at startup, entered as an async context
manager (which opens every backend), and passed to the worker and the
retrieval service.

Example usage:
    >>> provider = EmbeddingProvider.from_config(config)
    >>> async with provider:
    ...     result = await provider.embed("Hello world")
    ...     result.vector.shape
    (384,)
"""

from __future__ import annotations

import contextlib
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import numpy as np
import structlog

from contextlens.config import ContextlensConfig
from contextlens.embeddings.local import LocalEmbeddingBackend
from contextlens.embeddings.ollama_client import OllamaClient
from contextlens.embeddings.openai_client import OpenAIEmbeddingClient
from contextlens.errors import DimensionMismatchError, EmptyContentError, ProviderUnavailableError

logger = structlog.get_logger(__name__)


@runtime_checkable
class EmbeddingBackend(Protocol):
    """Protocol for embedding backend implementations."""

    name: str

    @property
    def model(self) -> str:
        """Backend-specific model name."""
        ...

    async def generate_embedding(self, text: str) -> list[float]:
        """Generate embedding vector for text."""
        ...

    async def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        """Generate embedding vectors for texts, in input order."""
        ...

    async def health_check(self) -> bool:
        """Check if backend is healthy."""
        ...


@dataclass(frozen=True)
class EmbeddingResult:
    """A generated embedding.

    Attributes:
        vector: Normalized float32 vector
        model: Logical model identifier stored on records
        backend: Name of the backend that produced the vector
        duration_ms: Wall-clock generation time
    """

    vector: np.ndarray
    model: str
    backend: str
    duration_ms: float

    def metadata(self) -> dict[str, Any]:
        """Generation metadata stored alongside the vector."""
        return {
            "generation_time_ms": round(self.duration_ms, 3),
            "backend": self.backend,
            "dimension": int(self.vector.shape[0]),
        }


def normalize_embedding(embedding: Sequence[float] | np.ndarray) -> np.ndarray:
    """Normalize embedding to a unit vector.

    Args:
        embedding: Raw embedding vector

    Returns:
        float32 vector with L2 norm 1.0, or the raw vector if its norm is zero
    """
    arr = np.asarray(embedding, dtype=np.float32)
    norm = np.linalg.norm(arr)
    if norm == 0:
        logger.warning("embedding_zero_norm", embedding_dim=int(arr.shape[0]))
        return arr
    return arr / norm


class EmbeddingProvider:
    """Embedding generation over an ordered list of backends.

    Attributes:
        backends: Backends in the order they are tried
        model: Logical model identifier recorded on every result
        dimension: Required vector dimension
        normalize: Whether to L2-normalize vectors
        max_input_chars: Input text is truncated to this length
    """

    def __init__(
        self,
        backends: Sequence[EmbeddingBackend],
        model: str,
        dimension: int,
        normalize: bool = True,
        max_input_chars: int = 8000,
    ) -> None:
        if not backends:
            raise ValueError("EmbeddingProvider requires at least one backend")
        self.backends = list(backends)
        self.model = model
        self.dimension = dimension
        self.normalize = normalize
        self.max_input_chars = max_input_chars
        self._exit_stack: contextlib.AsyncExitStack | None = None

        logger.info(
            "embedding_provider_initialized",
            model=model,
            dimension=dimension,
            backends=[backend.name for backend in self.backends],
        )

    @classmethod
    def from_config(cls, config: ContextlensConfig) -> EmbeddingProvider:
        """Build the backend chain named by ``config.embedding.backends``.

        A backend that cannot be constructed (for example OpenAI without an
        API key) is left out of the chain with a warning.

        Raises:
            ValueError: If no configured backend could be constructed.
        """
        embedding = config.embedding
        backends: list[EmbeddingBackend] = []

        for name in embedding.backends:
            if name == "ollama":
                backends.append(OllamaClient(config.ollama))
            elif name == "openai":
                try:
                    backends.append(
                        OpenAIEmbeddingClient(config.openai, dimensions=embedding.dimension)
                    )
                except ValueError as e:
                    logger.warning("embedding_backend_skipped", backend=name, reason=str(e))
            elif name == "local":
                backends.append(LocalEmbeddingBackend(config.local))

        if not backends:
            raise ValueError("No embedding backend could be configured")

        return cls(
            backends,
            model=embedding.model,
            dimension=embedding.dimension,
            normalize=embedding.normalize,
            max_input_chars=embedding.max_input_chars,
        )

    async def __aenter__(self) -> EmbeddingProvider:
        stack = contextlib.AsyncExitStack()
        try:
            for backend in self.backends:
                if hasattr(backend, "__aenter__"):
                    await stack.enter_async_context(backend)  # type: ignore[arg-type]
        except BaseException:
            await stack.aclose()
            raise
        self._exit_stack = stack
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
            self._exit_stack = None

    def prepare_text(self, text: str) -> str:
        """Trim and truncate input text.

        Raises:
            EmptyContentError: If the text is empty after trimming.
        """
        prepared = (text or "").strip()
        if not prepared:
            raise EmptyContentError("Cannot generate embedding for empty or whitespace text")
        return prepared[: self.max_input_chars]

    def _finalize(self, raw: Sequence[float], backend: EmbeddingBackend) -> np.ndarray:
        vector = normalize_embedding(raw) if self.normalize else np.asarray(raw, dtype=np.float32)
        if vector.ndim != 1 or vector.shape[0] != self.dimension:
            raise DimensionMismatchError(
                self.dimension, int(vector.shape[-1]) if vector.ndim else 0, backend.name
            )
        return vector

    async def embed(self, text: str) -> EmbeddingResult:
        """Generate a normalized embedding for text.

        Args:
            text: Input text to embed

        Returns:
            EmbeddingResult from the first backend that succeeds

        Raises:
            EmptyContentError: If text is empty after trimming
            DimensionMismatchError: If a backend returns the wrong dimension
            ProviderUnavailableError: If every backend fails
        """
        prepared = self.prepare_text(text)
        errors: dict[str, Exception] = {}

        for backend in self.backends:
            start_time = time.perf_counter()
            try:
                raw = await backend.generate_embedding(prepared)
            except Exception as e:
                errors[backend.name] = e
                logger.warning(
                    "embedding_backend_failed",
                    backend=backend.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            vector = self._finalize(raw, backend)
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.debug(
                "embedding_generated",
                backend=backend.name,
                text_length=len(prepared),
                duration_ms=round(duration_ms, 3),
            )
            return EmbeddingResult(
                vector=vector, model=self.model, backend=backend.name, duration_ms=duration_ms
            )

        logger.error("all_embedding_backends_failed", backends=list(errors))
        raise ProviderUnavailableError(errors)

    async def embed_batch(self, texts: Sequence[str]) -> list[EmbeddingResult]:
        """Generate embeddings for several texts with one backend call.

        Args:
            texts: Input texts to embed

        Returns:
            One EmbeddingResult per input text, in input order

        Raises:
            EmptyContentError: If any text is empty after trimming
            DimensionMismatchError: If a backend returns the wrong dimension
            ProviderUnavailableError: If every backend fails
        """
        if not texts:
            return []
        prepared = [self.prepare_text(text) for text in texts]
        errors: dict[str, Exception] = {}

        for backend in self.backends:
            start_time = time.perf_counter()
            try:
                raw_batch = await backend.generate_embeddings(prepared)
                if len(raw_batch) != len(prepared):
                    raise ValueError(
                        f"Expected {len(prepared)} embeddings, got {len(raw_batch)}"
                    )
            except Exception as e:
                errors[backend.name] = e
                logger.warning(
                    "embedding_backend_failed",
                    backend=backend.name,
                    error=str(e),
                    error_type=type(e).__name__,
                    batch_size=len(prepared),
                )
                continue

            vectors = [self._finalize(raw, backend) for raw in raw_batch]
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "embedding_batch_generated",
                backend=backend.name,
                batch_size=len(prepared),
                duration_ms=round(duration_ms, 3),
            )
            return [
                EmbeddingResult(
                    vector=vector, model=self.model, backend=backend.name, duration_ms=duration_ms
                )
                for vector in vectors
            ]

        logger.error("all_embedding_backends_failed", backends=list(errors))
        raise ProviderUnavailableError(errors)

    async def health(self) -> dict[str, bool]:
        """Health of each backend, keyed by backend name."""
        results: dict[str, bool] = {}
        for backend in self.backends:
            try:
                results[backend.name] = await backend.health_check()
            except Exception as e:
                logger.warning("embedding_backend_health_error", backend=backend.name, error=str(e))
                results[backend.name] = False
        return results
