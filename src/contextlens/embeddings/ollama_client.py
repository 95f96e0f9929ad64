"""Ollama API client for embedding generation.

This module provides an async HTTP client for the Ollama ``/api/embed``
endpoint. It handles timeouts, retries with exponential backoff, and
comprehensive error logging. Ollama is the primary backend of the default
provider chain.

Example usage:
    >>> from contextlens.config import OllamaConfig
    >>> config = OllamaConfig(url="http://localhost:11434", model="all-minilm")
    >>> async with OllamaClient(config) as client:
    ...     embedding = await client.generate_embedding("Hello world")
    ...     is_healthy = await client.health_check()
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from contextlens.config import OllamaConfig

logger = structlog.get_logger(__name__)


class OllamaClientError(Exception):
    """Base exception for Ollama client errors."""

    pass


class OllamaTimeoutError(OllamaClientError):
    """Raised when Ollama request times out."""

    pass


class OllamaConnectionError(OllamaClientError):
    """Raised when unable to connect to Ollama service."""

    pass


class OllamaAPIError(OllamaClientError):
    """Raised when Ollama API returns an error response."""

    pass


class OllamaClient:
    """Async client for Ollama embedding API.

    Attributes:
        config: Ollama configuration containing URL, model, and timeout settings
        max_retries: Retry attempts for transient failures
        initial_backoff: First backoff delay in seconds, doubled per attempt
    """

    name = "ollama"

    def __init__(
        self,
        config: OllamaConfig,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
    ) -> None:
        self.config = config
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self._client: httpx.AsyncClient | None = None
        logger.info(
            "ollama_client_initialized",
            url=config.url,
            model=config.model,
            timeout=config.timeout_seconds,
        )

    @property
    def model(self) -> str:
        """Ollama model name."""
        return self.config.model

    async def __aenter__(self) -> OllamaClient:
        self._client = httpx.AsyncClient(
            base_url=self.config.url,
            timeout=httpx.Timeout(self.config.timeout_seconds),
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("OllamaClient must be used as async context manager")
        return self._client

    async def generate_embedding(self, text: str) -> list[float]:
        """Generate embedding vector for given text.

        Args:
            text: Input text to embed

        Returns:
            Embedding vector as list of floats

        Raises:
            OllamaTimeoutError: If request times out after all retries
            OllamaConnectionError: If unable to connect after all retries
            OllamaAPIError: If API returns error response
        """
        embeddings = await self._embed([text])
        return embeddings[0]

    async def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for several texts in one request.

        Args:
            texts: Input texts to embed

        Returns:
            One embedding per input text, in input order
        """
        if not texts:
            return []
        return await self._embed(texts)

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        """POST to /api/embed with exponential backoff on transient failures.

        Retries on connection errors, timeouts and 5xx status codes.
        """
        client = self._get_client()
        endpoint = "/api/embed"
        payload = {"model": self.config.model, "input": texts}
        max_retries = self.max_retries

        for attempt in range(max_retries + 1):
            try:
                logger.debug(
                    "ollama_embedding_request",
                    attempt=attempt + 1,
                    max_retries=max_retries + 1,
                    batch_size=len(texts),
                )

                response = await client.post(endpoint, json=payload)

                if response.status_code == 200:
                    data = response.json()
                    embeddings = data.get("embeddings")

                    if (
                        not isinstance(embeddings, list)
                        or len(embeddings) != len(texts)
                        or not all(isinstance(e, list) and e for e in embeddings)
                    ):
                        raise OllamaAPIError(
                            "Invalid response format: missing or invalid 'embeddings' field"
                        )

                    logger.debug(
                        "ollama_embedding_generated",
                        batch_size=len(texts),
                        embedding_dim=len(embeddings[0]),
                        attempt=attempt + 1,
                    )
                    return embeddings

                error_msg = f"API error: HTTP {response.status_code}"
                try:
                    error_data = response.json()
                    error_msg = f"{error_msg}: {error_data}"
                except ValueError:
                    error_msg = f"{error_msg}: {response.text}"

                if 500 <= response.status_code < 600 and attempt < max_retries:
                    backoff = self.initial_backoff * (2**attempt)
                    logger.warning(
                        "ollama_server_error_retry",
                        status_code=response.status_code,
                        attempt=attempt + 1,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue

                raise OllamaAPIError(error_msg)

            except httpx.TimeoutException as e:
                if attempt < max_retries:
                    backoff = self.initial_backoff * (2**attempt)
                    logger.warning(
                        "ollama_timeout_retry",
                        attempt=attempt + 1,
                        backoff_seconds=backoff,
                        error=str(e),
                    )
                    await asyncio.sleep(backoff)
                    continue
                logger.error(
                    "ollama_timeout_exhausted",
                    max_retries=max_retries,
                    timeout_seconds=self.config.timeout_seconds,
                )
                raise OllamaTimeoutError(
                    f"Request timed out after {max_retries} retries"
                ) from e

            except (httpx.ConnectError, httpx.NetworkError) as e:
                if attempt < max_retries:
                    backoff = self.initial_backoff * (2**attempt)
                    logger.warning(
                        "ollama_connection_error_retry",
                        attempt=attempt + 1,
                        backoff_seconds=backoff,
                        error=str(e),
                    )
                    await asyncio.sleep(backoff)
                    continue
                logger.error(
                    "ollama_connection_exhausted",
                    url=self.config.url,
                    max_retries=max_retries,
                )
                raise OllamaConnectionError(
                    f"Failed to connect to Ollama at {self.config.url}"
                ) from e

        raise OllamaClientError("Unexpected retry loop exit")

    async def health_check(self) -> bool:
        """Check if Ollama service is healthy and responsive.

        Returns:
            True if service is healthy, False otherwise
        """
        client = self._get_client()

        try:
            # Ollama has no health endpoint; the tags listing is cheap
            response = await client.get("/api/tags")

            if response.status_code == 200:
                logger.info("ollama_health_check_passed", url=self.config.url)
                return True
            logger.warning(
                "ollama_health_check_failed",
                url=self.config.url,
                status_code=response.status_code,
            )
            return False

        except httpx.HTTPError as e:
            logger.warning("ollama_health_check_error", url=self.config.url, error=str(e))
            return False
