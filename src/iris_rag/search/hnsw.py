"""
HNSW Search Backend

Approximate nearest-neighbour search over a snapshot using a FAISS
``IndexHNSWFlat`` graph.

Key Properties
--------------
- One graph per (snapshot version, dimensionality, model version), built on
  first use and reused until the snapshot is replaced
- Inner product over L2-normalized vectors (cosine)
- The candidate pool is over-fetched, then re-scored exactly and pushed
  through the same threshold / tie-break / limit pipeline as the exact scan
- Thread-safe: graph construction is guarded by a lock
"""

from __future__ import annotations

import logging
from threading import RLock
from typing import Dict, List, Optional, Sequence, Tuple

import faiss
import numpy as np

from ..config import Settings, settings
from ..models import ScoredChunk
from .backends import SearchBackend
from .similarity import cosine_scores, rank
from .snapshot import CandidateBlock, CorpusSnapshot

logger = logging.getLogger("iris_rag.search.hnsw")


class HnswSearchBackend(SearchBackend):
    """
    FAISS HNSW backend. Approximate: a true neighbour may be missed.
    """

    name = "hnsw"

    def __init__(
        self,
        neighbors: int = 32,
        oversample: int = 4,
        ef_search: Optional[int] = None,
    ) -> None:
        """
        Parameters
        ----------
        neighbors : int
            HNSW ``M`` (graph out-degree).
        oversample : int
            Candidate pool size as a multiple of ``limit``.
        ef_search : Optional[int]
            HNSW search breadth. Defaults to the candidate pool size, with a
            floor of 64.
        """
        if neighbors < 2:
            raise ValueError("neighbors must be >= 2")
        if oversample < 1:
            raise ValueError("oversample must be >= 1")

        self._neighbors = neighbors
        self._oversample = oversample
        self._ef_search = ef_search

        self._graphs: Dict[Tuple[int, int, str], faiss.Index] = {}
        self._lock = RLock()

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "HnswSearchBackend":
        return cls(neighbors=config.hnsw_neighbors, oversample=config.hnsw_oversample)

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    def _graph_for(
        self,
        snapshot: CorpusSnapshot,
        block: CandidateBlock,
        dim: int,
        model_version: str,
    ) -> faiss.Index:
        key = (snapshot.version, dim, model_version)

        with self._lock:
            graph = self._graphs.get(key)
            if graph is not None:
                return graph

            # graphs of replaced snapshots are never queried again
            self._graphs = {
                k: g for k, g in self._graphs.items() if k[0] == snapshot.version
            }

            vectors = np.array(block.matrix, dtype="float32", copy=True, order="C")
            faiss.normalize_L2(vectors)

            graph = faiss.IndexHNSWFlat(dim, self._neighbors, faiss.METRIC_INNER_PRODUCT)
            graph.add(vectors)
            self._graphs[key] = graph

            logger.debug(
                "Built HNSW graph: %d vectors, dim=%d, snapshot=%d",
                len(block),
                dim,
                snapshot.version,
            )
            return graph

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def search(
        self,
        snapshot: CorpusSnapshot,
        query: Sequence[float],
        limit: int,
        threshold: float,
        model_version: str,
    ) -> List[ScoredChunk]:
        vector = self._as_query(query)
        dim = vector.size
        block = self._candidate_block(snapshot, dim, model_version)
        if len(block) == 0 or limit == 0:
            return []
        if limit < 0:
            raise ValueError("limit must be >= 0")

        graph = self._graph_for(snapshot, block, dim, model_version)

        k = min(len(block), limit * self._oversample)
        params = faiss.SearchParametersHNSW(efSearch=max(self._ef_search or k, 64))

        q = np.array(vector, dtype="float32", copy=True).reshape(1, -1)
        if np.linalg.norm(q) == 0.0:
            # every cosine is 0; rank the whole block exactly
            positions = np.arange(len(block))
        else:
            faiss.normalize_L2(q)
            _, labels = graph.search(q, k, params=params)
            positions = np.array([int(p) for p in labels[0] if p >= 0], dtype=np.int64)

        if positions.size == 0:
            return []

        scores = cosine_scores(block.matrix[positions], vector)
        ids = [block.candidates[p].id for p in positions]
        ranked = rank(ids, scores, limit, threshold)

        return self._materialize(
            block,
            [(int(positions[i]), score) for i, score in ranked],
        )

    def reset(self) -> None:
        with self._lock:
            self._graphs.clear()
