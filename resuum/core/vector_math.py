"""Vector helpers for embeddings: similarity, centroids, redundancy checks."""

from __future__ import annotations

import math

REDUNDANCY_THRESHOLD = 0.85


def cosine_similarity(v1: list[float], v2: list[float]) -> float:
    """Compute cosine similarity between two vectors.

    Raises ValueError on a dimension mismatch; returns 0.0 if either vector is zero.
    """
    if len(v1) != len(v2):
        raise ValueError(f"Vector dimensions must match ({len(v1)} != {len(v2)})")
    dot = sum(a * b for a, b in zip(v1, v2))
    norm1 = math.sqrt(sum(a * a for a in v1))
    norm2 = math.sqrt(sum(b * b for b in v2))
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return dot / (norm1 * norm2)


def calculate_centroid(vectors: list[list[float]]) -> list[float] | None:
    """Arithmetic mean of the given vectors (not renormalized).

    Empty vectors are ignored. Returns None when nothing is left.
    """
    valid = [v for v in vectors if v]
    if not valid:
        return None

    dim = len(valid[0])
    for v in valid:
        if len(v) != dim:
            raise ValueError(f"Vector dimension mismatch in centroid ({len(v)} != {dim})")

    centroid = [0.0] * dim
    for v in valid:
        for d in range(dim):
            centroid[d] += v[d]
    count = len(valid)
    return [value / count for value in centroid]


def is_redundant(
    candidate: list[float],
    selected: list[list[float]],
    threshold: float = REDUNDANCY_THRESHOLD,
) -> bool:
    """True if candidate is at least `threshold` similar to any selected vector."""
    for other in selected:
        if other and len(other) == len(candidate):
            if cosine_similarity(candidate, other) >= threshold:
                return True
    return False


