"""
Cosine similarity and ranking.

Ranking pipeline, in order: score, drop scores below ``threshold``, sort by
score descending then chunk id ascending, truncate to ``limit``.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors, in [-1, 1].

    A zero-norm operand yields 0.0.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Dimension mismatch: {va.shape} vs {vb.shape}")

    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / (na * nb), -1.0, 1.0))


def cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """
    Cosine similarity of every row of ``matrix`` against ``query``.

    Rows (or a query) with zero norm score 0.0.
    """
    m = np.asarray(matrix, dtype=np.float64)
    q = np.asarray(query, dtype=np.float64)
    if m.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)

    q_norm = np.linalg.norm(q)
    if q_norm == 0.0:
        return np.zeros(m.shape[0], dtype=np.float64)

    row_norms = np.linalg.norm(m, axis=1)
    dots = m @ q
    denom = row_norms * q_norm

    scores = np.zeros(m.shape[0], dtype=np.float64)
    nonzero = denom > 0.0
    scores[nonzero] = dots[nonzero] / denom[nonzero]
    return np.clip(scores, -1.0, 1.0)


def rank(
    ids: Sequence[str],
    scores: Sequence[float],
    limit: int,
    threshold: float,
) -> List[Tuple[int, float]]:
    """
    Apply threshold, tie-break and limit.

    Returns ``(position, score)`` pairs, ``position`` indexing into ``ids``.
    """
    if limit < 0:
        raise ValueError("limit must be >= 0")
    if limit == 0:
        return []

    kept = [
        (i, float(score))
        for i, score in enumerate(scores)
        if float(score) >= threshold
    ]
    kept.sort(key=lambda item: (-item[1], ids[item[0]]))
    return kept[:limit]
