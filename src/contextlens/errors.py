"""Error taxonomy for contextlens.

Pipeline errors carry a ``permanent`` flag that the worker uses to decide
between retrying a job and failing it immediately:

- Transient: provider unavailable, provider timeout.
- Permanent: resource not found, empty content, dimension mismatch.

Validation errors raised at the scoring and retrieval boundary subclass
ValueError so callers can treat them as bad input.
"""

from __future__ import annotations


class ContextlensError(Exception):
    """Base class for all contextlens errors."""


class EmbeddingPipelineError(ContextlensError):
    """An error raised while turning a queued job into a stored vector.

    Attributes:
        permanent: True if retrying the same job cannot succeed.
    """

    permanent: bool = False


class ProviderUnavailableError(EmbeddingPipelineError):
    """Every configured embedding backend failed for a request.

    Attributes:
        errors: Mapping of backend name to the error it raised.
    """

    permanent = False

    def __init__(self, errors: dict[str, Exception]):
        self.errors = errors
        details = "; ".join(f"{name}: {err}" for name, err in errors.items())
        super().__init__(f"All embedding backends failed ({details})")


class EmbeddingTimeoutError(EmbeddingPipelineError):
    """Embedding generation exceeded its per-call deadline."""

    permanent = False

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Embedding generation timed out after {timeout_seconds}s")


class ResourceNotFoundError(EmbeddingPipelineError):
    """The resource referenced by a job no longer exists in the content store."""

    permanent = True

    def __init__(self, resource_type: str, resource_id: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} {resource_id} not found")


class EmptyContentError(EmbeddingPipelineError):
    """The text to embed is empty after trimming."""

    permanent = True


class DimensionMismatchError(EmbeddingPipelineError):
    """A backend returned a vector with an unexpected dimension."""

    permanent = True

    def __init__(self, expected: int, actual: int, backend: str | None = None):
        self.expected = expected
        self.actual = actual
        self.backend = backend
        msg = f"Embedding dimension mismatch: expected {expected}, got {actual}"
        if backend:
            msg += f" from {backend}"
        super().__init__(msg)


class QueryValidationError(ContextlensError, ValueError):
    """Malformed input to a scoring or retrieval query."""
