"""
Embedding Client

Wraps an ``EmbeddingOracle`` with the policies the store relies on:

- Batching of oracle calls (``batch_size`` texts per call)
- A bounded LRU cache keyed by (model version, SHA-256 of text), so
  re-indexing unchanged chunks never reaches the oracle
- Tagging of every vector with the model version that produced it
- Strict validation: one finite, non-empty vector per input, all with the
  same dimensionality

Cancellation is checked before each oracle call, never during one.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import Settings, settings as default_settings
from ..core.concurrency import CancellationToken
from ..core.errors import EmbeddingUnavailable
from ..models import TaggedEmbedding, content_hash
from .oracle import EmbeddingOracle

logger = logging.getLogger("iris_rag.embedding_client")

CacheKey = Tuple[str, str]


class EmbeddingClient:
    """Batching, caching front-end to an embedding oracle."""

    def __init__(
        self,
        oracle: EmbeddingOracle,
        batch_size: int = 20,
        cache_size: int = 4096,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.oracle = oracle
        self.batch_size = batch_size
        self.cache_size = max(0, cache_size)

        self._cache: "OrderedDict[CacheKey, Tuple[float, ...]]" = OrderedDict()
        self.cache_hits = 0
        self.cache_misses = 0

    @classmethod
    def from_settings(
        cls,
        oracle: EmbeddingOracle,
        config: Settings = default_settings,
    ) -> "EmbeddingClient":
        return cls(
            oracle,
            batch_size=config.embedding_batch_size,
            cache_size=config.embedding_cache_size,
        )

    @property
    def model_version(self) -> str:
        return self.oracle.model_version

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> TaggedEmbedding:
        """Embed a single text."""
        result = await self.embed_batch([text])
        return result[0]

    async def embed_batch(
        self,
        texts: Sequence[str],
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[TaggedEmbedding]:
        """
        Embed ``texts`` in order.

        Raises
        ------
        EmbeddingUnavailable
            If the oracle is not ready, fails, or returns malformed vectors.
        IndexingCancelled
            If ``cancel_token`` is tripped between oracle calls.
        """
        if not texts:
            return []

        version = self.oracle.model_version
        keys = [(version, content_hash(text)) for text in texts]

        vectors: Dict[CacheKey, Tuple[float, ...]] = {}
        missing: List[Tuple[CacheKey, str]] = []
        seen = set()

        for key, text in zip(keys, texts):
            cached = self._cache_get(key)
            if cached is not None:
                self.cache_hits += 1
                vectors[key] = cached
            elif key not in seen:
                self.cache_misses += 1
                seen.add(key)
                missing.append((key, text))

        if missing:
            if not self.oracle.is_ready():
                raise EmbeddingUnavailable(
                    f"Embedding oracle '{version}' is not ready."
                )

            for start in range(0, len(missing), self.batch_size):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()

                batch = missing[start : start + self.batch_size]
                raw = await self._call_oracle([text for _, text in batch], version)
                self._validate(raw, expected=len(batch))

                for (key, _), emb in zip(batch, raw):
                    vector = tuple(float(x) for x in emb)
                    vectors[key] = vector
                    self._cache_put(key, vector)

            logger.debug(
                "Embedded %d texts (%d from oracle '%s', %d cached)",
                len(texts),
                len(missing),
                version,
                len(texts) - len(missing),
            )

        dims = {len(v) for v in vectors.values()}
        if len(dims) > 1:
            raise EmbeddingUnavailable(
                f"Embedding oracle returned inconsistent dimensionalities: {sorted(dims)}"
            )

        return [TaggedEmbedding(vector=vectors[key], model_version=version) for key in keys]

    def clear_cache(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _call_oracle(self, texts: List[str], version: str) -> List[List[float]]:
        """One oracle call; any failure or malformed reply is ``EmbeddingUnavailable``."""
        try:
            raw = await self.oracle.embed(texts)
        except EmbeddingUnavailable:
            raise
        except Exception as exc:
            logger.warning("Embedding oracle '%s' failed: %r", version, exc)
            raise EmbeddingUnavailable(
                f"Embedding oracle '{version}' failed: {exc!r}"
            ) from exc

        try:
            return [[float(x) for x in emb] for emb in raw]
        except (TypeError, ValueError) as exc:
            raise EmbeddingUnavailable(
                f"Embedding oracle '{version}' returned malformed vectors: {exc}"
            ) from exc

    def _cache_get(self, key: CacheKey) -> Optional[Tuple[float, ...]]:
        vector = self._cache.get(key)
        if vector is not None:
            self._cache.move_to_end(key)
        return vector

    def _cache_put(self, key: CacheKey, vector: Tuple[float, ...]) -> None:
        if self.cache_size == 0:
            return
        self._cache[key] = vector
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    @staticmethod
    def _validate(raw: Sequence[Sequence[float]], expected: int) -> None:
        if len(raw) != expected:
            raise EmbeddingUnavailable(
                f"Embedding oracle returned {len(raw)} vectors for {expected} inputs."
            )

        dim = None
        for index, emb in enumerate(raw):
            if len(emb) == 0:
                raise EmbeddingUnavailable(f"Empty embedding vector at index {index}.")
            if dim is None:
                dim = len(emb)
            elif len(emb) != dim:
                raise EmbeddingUnavailable(
                    f"Inconsistent embedding dimensionality at index {index}."
                )
            if not all(math.isfinite(float(x)) for x in emb):
                raise EmbeddingUnavailable(f"Non-finite embedding value at index {index}.")
