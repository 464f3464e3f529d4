"""
Vector Math & Matryoshka Truncation
===================================
Distance/similarity primitives shared by cluster routing and search, plus
Matryoshka-style (MRL) truncation of full embeddings into compact hot-tier
vectors.

A 768-dim embedding is stored once at full precision for cold reranking; its
first 256 components, re-normalized to unit length, serve as the cheap
in-memory representation scanned in phase 1.
"""

from typing import Sequence, Union

import numpy as np

from vectorlake.core.exceptions import DimensionMismatchError, ValidationError

SUPPORTED_DIMENSIONS = (64, 128, 256, 512, 768)
EMBEDDINGGEMMA_DIMENSIONS = 768

VectorLike = Union[Sequence[float], np.ndarray]


def as_vector(vector: VectorLike, dtype=np.float64) -> np.ndarray:
    """Coerce a list/array into a flat numpy vector."""
    arr = np.asarray(vector, dtype=dtype)
    if arr.ndim != 1:
        arr = arr.reshape(-1)
    return arr


def _check_same_length(a: np.ndarray, b: np.ndarray, operation: str) -> None:
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(expected=a.shape[0], actual=b.shape[0], operation=operation)


def euclidean_distance(a: VectorLike, b: VectorLike) -> float:
    va, vb = as_vector(a), as_vector(b)
    _check_same_length(va, vb, "euclidean_distance")
    return float(np.linalg.norm(va - vb))


def dot_product(a: VectorLike, b: VectorLike) -> float:
    va, vb = as_vector(a), as_vector(b)
    _check_same_length(va, vb, "dot_product")
    return float(np.dot(va, vb))


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """
    Cosine similarity in [-1, 1].

    Raises:
        DimensionMismatchError: If the vectors differ in length.
        ValidationError: If either vector is empty or has zero magnitude.
    """
    va, vb = as_vector(a), as_vector(b)
    _check_same_length(va, vb, "cosine_similarity")
    if va.shape[0] == 0:
        raise ValidationError("vector", "cannot compute cosine similarity of empty vectors")
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        raise ValidationError("vector", "cannot compute cosine similarity with a zero vector")
    sim = float(np.dot(va, vb) / (norm_a * norm_b))
    # Clamp float drift
    return max(-1.0, min(1.0, sim))


def normalize_vector(vector: VectorLike) -> np.ndarray:
    """Scale a vector to unit length. A zero vector cannot be normalized."""
    v = as_vector(vector)
    norm = np.linalg.norm(v)
    if norm == 0:
        raise ValidationError("vector", "cannot normalize a zero vector")
    return (v / norm).astype(np.float32)


def _check_target_dimension(target: int) -> None:
    if target not in SUPPORTED_DIMENSIONS:
        raise ValidationError(
            "dimensions",
            f"{target} is not a supported MRL dimension {SUPPORTED_DIMENSIONS}",
            value=target,
        )


def truncate_embedding(vector: VectorLike, target_dimensions: int) -> np.ndarray:
    """Take the first ``target_dimensions`` components (no re-normalization)."""
    _check_target_dimension(target_dimensions)
    v = as_vector(vector, dtype=np.float32)
    if v.shape[0] < target_dimensions:
        raise ValidationError(
            "vector",
            f"input has {v.shape[0]} dimensions, cannot truncate to {target_dimensions}",
        )
    return v[:target_dimensions].copy()


def truncate_and_normalize(vector: VectorLike, target_dimensions: int) -> np.ndarray:
    """Truncate to a prefix and re-normalize to unit length (Matryoshka-style)."""
    return normalize_vector(truncate_embedding(vector, target_dimensions))


def batch_truncate_and_normalize(matrix: Union[np.ndarray, Sequence[VectorLike]], target_dimensions: int) -> np.ndarray:
    """
    Vectorised truncation for a batch of embeddings (one per row).

    Rows with zero magnitude after truncation raise ValidationError, same as
    the single-vector path.
    """
    _check_target_dimension(target_dimensions)
    m = np.asarray(matrix, dtype=np.float32)
    if m.ndim != 2:
        raise ValidationError("matrix", f"expected a 2-D batch, got {m.ndim}-D")
    if m.shape[1] < target_dimensions:
        raise ValidationError(
            "matrix",
            f"rows have {m.shape[1]} dimensions, cannot truncate to {target_dimensions}",
        )
    truncated = m[:, :target_dimensions]
    norms = np.linalg.norm(truncated, axis=1, keepdims=True)
    if np.any(norms == 0):
        raise ValidationError("matrix", "cannot normalize a zero row")
    return (truncated / norms).astype(np.float32)


def validate_embedding_dimensions(vector: VectorLike, expected: int) -> None:
    """Raise DimensionMismatchError("... expected X, got Y") on a length mismatch."""
    actual = len(vector)
    if actual != expected:
        raise DimensionMismatchError(expected=expected, actual=actual, operation="embedding validation")


def cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """
    Cosine similarity of ``query`` against every row of ``matrix``.

    Zero-magnitude rows (or a zero query) score 0 instead of raising, since
    bulk scans must not abort on one degenerate record.
    """
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float64)
    q = query.astype(np.float64)
    m = matrix.astype(np.float64)
    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(m, axis=1)
    denom = row_norms * q_norm
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, dots / denom, 0.0)
    return np.clip(scores, -1.0, 1.0)


__all__ = [
    "SUPPORTED_DIMENSIONS",
    "EMBEDDINGGEMMA_DIMENSIONS",
    "VectorLike",
    "as_vector",
    "euclidean_distance",
    "dot_product",
    "cosine_similarity",
    "cosine_scores",
    "normalize_vector",
    "truncate_embedding",
    "truncate_and_normalize",
    "batch_truncate_and_normalize",
    "validate_embedding_dimensions",
]
