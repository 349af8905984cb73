"""NumPy helpers for vector normalization and similarity."""

from collections.abc import Sequence

import numpy as np
from numpy.typing import NDArray

VectorLike = Sequence[float] | NDArray[np.float32]


def _as_array(vector: VectorLike) -> NDArray[np.float32]:
    return np.asarray(vector, dtype=np.float32)


def normalize_vector(vector: VectorLike) -> list[float]:
    """Scales to unit length. A zero vector is returned unchanged."""
    arr = _as_array(vector)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr.tolist()
    normalized: list[float] = (arr / norm).tolist()
    return normalized


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """Cosine of the angle between `a` and `b`, in [-1, 1]. 0 when either norm is 0."""
    arr_a = np.asarray(a, dtype=np.float64)
    arr_b = np.asarray(b, dtype=np.float64)
    if arr_a.shape != arr_b.shape:
        raise ValueError(f"Vector length mismatch: {arr_a.shape[0]} != {arr_b.shape[0]}")

    # sqrt of the product keeps cos(v, v) exactly 1
    denom = float(np.sqrt(np.dot(arr_a, arr_a) * np.dot(arr_b, arr_b)))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(arr_a, arr_b) / denom, -1.0, 1.0))


def find_top_k(
    query: VectorLike,
    candidates: Sequence[VectorLike],
    k: int,
    min_score: float = 0.0,
) -> list[tuple[int, float]]:
    """Returns (index, similarity) pairs of the k most similar candidates, descending.

    Ties keep candidate order. Candidates scoring below `min_score` are dropped.
    """
    if not candidates or k <= 0:
        return []

    scores = [cosine_similarity(query, candidate) for candidate in candidates]
    ranked = sorted(range(len(scores)), key=lambda i: -scores[i])
    return [(i, scores[i]) for i in ranked if scores[i] >= min_score][:k]
