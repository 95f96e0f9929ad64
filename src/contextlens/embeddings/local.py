"""In-process embedding backend using sentence-transformers.

The model is loaded once by :meth:`LocalEmbeddingBackend.load`, attempted when
the backend is entered as an async context manager and again on first use.
Inference runs in a worker thread so the event loop stays responsive.
Requires the ``local`` extra: ``pip install contextlens[local]``.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from contextlens.config import LocalModelConfig

logger = structlog.get_logger(__name__)


class LocalModelError(Exception):
    """Raised when the local model cannot be loaded or run."""

    pass


class LocalEmbeddingBackend:
    """Embedding backend running a sentence-transformers model in-process.

    The model applies mean pooling; vectors are L2-normalized.

    Attributes:
        config: Local model configuration
    """

    name = "local"

    def __init__(self, config: LocalModelConfig) -> None:
        self.config = config
        self._model: Any = None
        self._load_lock = asyncio.Lock()

    @property
    def model(self) -> str:
        """Hugging Face model identifier."""
        return self.config.model_name

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    async def __aenter__(self) -> LocalEmbeddingBackend:
        try:
            await self.load()
        except LocalModelError as e:
            # Retried on first use; the provider falls back meanwhile
            logger.warning("local_model_unavailable", model=self.config.model_name, error=str(e))
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self._model = None

    async def load(self) -> None:
        """Load the model once; later calls are no-ops.

        Concurrent callers wait for a single load.

        Raises:
            LocalModelError: If sentence-transformers is not installed or the
                model cannot be loaded.
        """
        if self._model is not None:
            return
        async with self._load_lock:
            if self._model is None:
                await self._load_model()

    async def _load_model(self) -> None:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise LocalModelError(
                "sentence-transformers is not installed; install contextlens[local]"
            ) from e

        cache_dir = str(self.config.cache_dir) if self.config.cache_dir else None
        logger.info("local_model_loading", model=self.config.model_name, device=self.config.device)
        try:
            self._model = await asyncio.to_thread(
                SentenceTransformer,
                self.config.model_name,
                device=self.config.device,
                cache_folder=cache_dir,
            )
        except Exception as e:
            raise LocalModelError(f"Failed to load {self.config.model_name}: {e}") from e
        logger.info("local_model_loaded", model=self.config.model_name)

    async def generate_embedding(self, text: str) -> list[float]:
        """Generate a normalized embedding for one text."""
        embeddings = await self.generate_embeddings([text])
        return embeddings[0]

    async def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        """Generate normalized embeddings for several texts, in input order."""
        if not texts:
            return []
        await self.load()

        vectors = await asyncio.to_thread(
            self._model.encode,
            texts,
            normalize_embeddings=True,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return [vector.tolist() for vector in vectors]

    async def health_check(self) -> bool:
        """True once the model is loaded."""
        return self.is_loaded
