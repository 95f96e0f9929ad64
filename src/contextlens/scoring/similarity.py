"""Vector similarity primitives.

Cosine similarity is defined as ``dot(a, b) / (|a| * |b|)`` and as 0 when
either vector has zero norm. Stored-data filters use
``similarity = 1 - cosine_distance``, the same relation pgvector's ``<=>``
operator follows.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from contextlens.errors import QueryValidationError

VectorLike = Sequence[float] | np.ndarray


def validate_vector(vector: VectorLike, dimension: int | None = None) -> np.ndarray:
    """Check that a query vector is a finite 1-D float array.

    Args:
        vector: Candidate vector
        dimension: Required length, or None to accept any non-empty length

    Returns:
        The vector as a float64 numpy array

    Raises:
        QueryValidationError: If the vector is malformed
    """
    try:
        arr = np.asarray(vector, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise QueryValidationError(f"Query vector must contain only numbers: {e}") from e

    if arr.ndim != 1 or arr.shape[0] == 0:
        raise QueryValidationError(
            f"Query vector must be a non-empty 1-D array, got shape {arr.shape}"
        )
    if dimension is not None and arr.shape[0] != dimension:
        raise QueryValidationError(
            f"Query vector has dimension {arr.shape[0]}, expected {dimension}"
        )
    if not np.all(np.isfinite(arr)):
        raise QueryValidationError("Query vector contains NaN or infinite values")
    return arr


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """Cosine similarity of two vectors, 0 if either has zero norm.

    Raises:
        QueryValidationError: If the vectors differ in length
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise QueryValidationError(
            f"Cannot compare vectors of shapes {va.shape} and {vb.shape}"
        )
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def cosine_distance(a: VectorLike, b: VectorLike) -> float:
    """``1 - cosine_similarity(a, b)``."""
    return 1.0 - cosine_similarity(a, b)


def cosine_similarities(query: VectorLike, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``matrix``.

    Rows with zero norm (and every row, if the query has zero norm) score 0.

    Args:
        query: Vector of length d
        matrix: Array of shape (n, d)

    Returns:
        Array of n similarities
    """
    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(matrix, dtype=np.float64)
    if m.size == 0:
        return np.zeros(0, dtype=np.float64)
    if m.ndim != 2 or m.shape[1] != q.shape[0]:
        raise QueryValidationError(
            f"Cannot compare vector of shape {q.shape} with matrix of shape {m.shape}"
        )
    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / np.where(norms > 0, norms, 1.0), 0.0)
    return sims
