"""OpenAI embeddings API client.

Secondary backend of the default provider chain. Requests the configured
output dimension so its vectors are comparable with the primary backend's
model dimension.
"""

from __future__ import annotations

import os
from typing import Any

import httpx
import structlog

from contextlens.config import OpenAIConfig

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"


class OpenAIEmbeddingError(Exception):
    """Raised when the OpenAI embeddings API request fails."""

    pass


class OpenAIEmbeddingClient:
    """OpenAI embedding API client.

    Attributes:
        config: OpenAI configuration (model, timeout, API key)
        api_key: Resolved API key
        dimensions: Requested output dimension, or None for the model default
    """

    name = "openai"

    def __init__(
        self,
        config: OpenAIConfig,
        dimensions: int | None = None,
        base_url: str = OPENAI_BASE_URL,
    ) -> None:
        """Initialize OpenAI embedding client.

        Args:
            config: OpenAI configuration
            dimensions: Output dimension to request from the API
            base_url: API base URL

        Raises:
            ValueError: If no API key is configured and OPENAI_API_KEY is not set
        """
        self.config = config
        self.api_key = config.api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError(
                "OpenAI API key required: set openai.api_key or OPENAI_API_KEY env var"
            )

        self.dimensions = dimensions
        self.base_url = base_url
        self._client: httpx.AsyncClient | None = None

        logger.info(
            "openai_embedding_client_initialized",
            model=config.model,
            dimensions=dimensions,
            timeout=config.timeout_seconds,
        )

    @property
    def model(self) -> str:
        """OpenAI model name."""
        return self.config.model

    async def __aenter__(self) -> OpenAIEmbeddingClient:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.config.timeout_seconds),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "OpenAIEmbeddingClient must be used as async context manager"
            )
        return self._client

    async def generate_embedding(self, text: str) -> list[float]:
        """Generate embedding using OpenAI API.

        Args:
            text: Input text to embed

        Returns:
            Embedding vector as list of floats

        Raises:
            OpenAIEmbeddingError: If the API request fails
        """
        embeddings = await self.generate_embeddings([text])
        return embeddings[0]

    async def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for several texts in one request.

        The API may return items out of order; they are sorted by their
        ``index`` field.

        Args:
            texts: Input texts to embed

        Returns:
            One embedding per input text, in input order

        Raises:
            OpenAIEmbeddingError: If the API request fails
        """
        if not texts:
            return []

        client = self._get_client()
        payload: dict[str, Any] = {"input": texts, "model": self.config.model}
        if self.dimensions is not None:
            payload["dimensions"] = self.dimensions

        try:
            logger.debug(
                "openai_embedding_request", batch_size=len(texts), model=self.config.model
            )
            response = await client.post("/embeddings", json=payload)
            response.raise_for_status()
            items = sorted(response.json()["data"], key=lambda item: item["index"])
            embeddings = [item["embedding"] for item in items]

        except httpx.HTTPStatusError as e:
            logger.error(
                "openai_api_error",
                status_code=e.response.status_code,
                error=str(e),
            )
            raise OpenAIEmbeddingError(
                f"OpenAI API error: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("openai_request_failed", error=str(e))
            raise OpenAIEmbeddingError(f"OpenAI request failed: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise OpenAIEmbeddingError(f"Invalid response format: {e}") from e

        if len(embeddings) != len(texts):
            raise OpenAIEmbeddingError(
                f"Expected {len(texts)} embeddings, got {len(embeddings)}"
            )

        logger.debug(
            "openai_embedding_generated",
            batch_size=len(texts),
            embedding_dim=len(embeddings[0]),
            model=self.config.model,
        )
        return embeddings

    async def health_check(self) -> bool:
        """Check if OpenAI API is accessible.

        Returns:
            True if API is accessible, False otherwise
        """
        client = self._get_client()

        try:
            response = await client.get("/models")
            if response.status_code == 200:
                logger.info("openai_health_check_passed")
                return True
            logger.warning("openai_health_check_failed", status_code=response.status_code)
            return False

        except httpx.HTTPError as e:
            logger.warning("openai_health_check_error", error=str(e))
            return False
