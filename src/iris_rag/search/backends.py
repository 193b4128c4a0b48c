"""
Search Backends

A ``SearchBackend`` turns a query vector and a ``CorpusSnapshot`` into
ranked ``ScoredChunk`` hits. Backends are synchronous and CPU-bound; the
engine runs them in a worker thread.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Sequence

import numpy as np

from ..core.errors import DimensionMismatch
from ..models import ScoredChunk
from .similarity import cosine_scores, rank
from .snapshot import CandidateBlock, CorpusSnapshot


class SearchBackend(ABC):
    """Interface shared by the exact and approximate search strategies."""

    name: str = "abstract"

    @abstractmethod
    def search(
        self,
        snapshot: CorpusSnapshot,
        query: Sequence[float],
        limit: int,
        threshold: float,
        model_version: str,
    ) -> List[ScoredChunk]:
        """
        Rank the snapshot's eligible chunks against ``query``.

        Raises
        ------
        DimensionMismatch
            If eligible chunks exist but none shares the query's
            dimensionality.
        """

    def reset(self) -> None:
        """Drop any derived structures (called after ``optimize_index``)."""

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _as_query(query: Sequence[float]) -> np.ndarray:
        vector = np.asarray(query, dtype=np.float64)
        if vector.ndim != 1 or vector.size == 0:
            raise ValueError("Query embedding must be a non-empty 1-D vector.")
        return vector

    @staticmethod
    def _candidate_block(
        snapshot: CorpusSnapshot,
        dim: int,
        model_version: str,
    ) -> CandidateBlock:
        block = snapshot.candidates(dim, model_version)
        if len(block) == 0 and not any(
            c.embedding_dim == dim
            for c in snapshot
            if c.is_eligible(model_version)
        ):
            stored = snapshot.dimensions(model_version)
            if stored:
                raise DimensionMismatch(dim, stored)
        return block

    @staticmethod
    def _materialize(
        block: CandidateBlock,
        ranked: List[tuple],
    ) -> List[ScoredChunk]:
        return [
            ScoredChunk(
                chunk=block.candidates[pos].to_embedded(block.matrix[pos]),
                score=score,
            )
            for pos, score in ranked
        ]


class ExactSearchBackend(SearchBackend):
    """Linear scan over the snapshot. Exact cosine ranking."""

    name = "exact"

    def search(
        self,
        snapshot: CorpusSnapshot,
        query: Sequence[float],
        limit: int,
        threshold: float,
        model_version: str,
    ) -> List[ScoredChunk]:
        vector = self._as_query(query)
        block = self._candidate_block(snapshot, vector.size, model_version)
        if len(block) == 0 or limit == 0:
            return []

        scores = cosine_scores(block.matrix, vector)
        ids = [c.id for c in block.candidates]
        return self._materialize(block, rank(ids, scores, limit, threshold))
