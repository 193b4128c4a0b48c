"""
Embedding blob codec.

Embeddings are persisted as fixed-length blobs of native-endian float32
values, ``4 * dim`` bytes each.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from ..core.errors import CorruptEmbedding

EMBEDDING_DTYPE = np.dtype("=f4")


def encode_embedding(vector: Sequence[float]) -> bytes:
    arr = np.asarray(vector, dtype=EMBEDDING_DTYPE)
    if arr.ndim != 1 or arr.size == 0:
        raise ValueError("Embedding must be a non-empty 1-D vector.")
    return arr.tobytes()


def decode_embedding(blob: Optional[bytes], dim: Optional[int] = None) -> np.ndarray:
    """
    Decode a stored blob into a read-only float32 vector.

    Raises
    ------
    CorruptEmbedding
        If the blob is missing, truncated, of the wrong dimensionality, or
        holds non-finite values.
    """
    if not blob:
        raise CorruptEmbedding("Embedding blob is empty.")
    if len(blob) % EMBEDDING_DTYPE.itemsize != 0:
        raise CorruptEmbedding(
            f"Embedding blob length {len(blob)} is not a multiple of "
            f"{EMBEDDING_DTYPE.itemsize}."
        )

    vector = np.frombuffer(blob, dtype=EMBEDDING_DTYPE)
    if dim is not None and vector.size != dim:
        raise CorruptEmbedding(
            f"Embedding blob holds {vector.size} values, expected {dim}."
        )
    if not np.all(np.isfinite(vector)):
        raise CorruptEmbedding("Embedding blob holds non-finite values.")
    return vector
