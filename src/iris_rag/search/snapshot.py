"""
Corpus Snapshot

An immutable, in-memory view of every visible chunk, used by searches.

Design Goals
------------
- Readers never lock: a snapshot is never mutated once published; writers
  build a new one (copy-on-write per document) and swap the reference
- Embedding blobs are decoded lazily, once per (dimension, model version),
  into a contiguous float32 matrix shared by all searches on the snapshot
- Corrupt blobs are reported once, at decode time, and skipped
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import numpy as np

from ..core.errors import CorruptEmbedding
from ..db.codec import EMBEDDING_DTYPE, decode_embedding
from ..models import EmbeddedChunk

logger = logging.getLogger("iris_rag.search.snapshot")

_versions = itertools.count(1)


# ---------------------------------------------------------------------
# Stored chunk
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StoredChunk:
    """
    A persisted chunk as held in memory.

    The embedding stays in its stored blob form until a search needs it.
    """

    id: str
    document_id: str
    chunk_index: int
    text: str
    token_count: int
    start_offset: int
    end_offset: int
    embedding: bytes
    embedding_dim: int
    model_version: str
    needs_reembedding: bool
    created_at: datetime

    @classmethod
    def from_record(cls, record) -> "StoredChunk":
        """Build from a ``ChunkRecord`` row."""
        return cls(
            id=record.id,
            document_id=record.document_id,
            chunk_index=record.chunk_index,
            text=record.content,
            token_count=record.token_count,
            start_offset=record.start_offset,
            end_offset=record.end_offset,
            embedding=record.embedding,
            embedding_dim=record.embedding_dim,
            model_version=record.embedding_model_version,
            needs_reembedding=bool(record.needs_reembedding),
            created_at=record.created_at,
        )

    def is_eligible(self, model_version: str) -> bool:
        return not self.needs_reembedding and self.model_version == model_version

    def to_embedded(self, vector: Optional[np.ndarray] = None) -> EmbeddedChunk:
        if vector is None:
            vector = decode_embedding(self.embedding, self.embedding_dim)
        return EmbeddedChunk(
            id=self.id,
            document_id=self.document_id,
            chunk_index=self.chunk_index,
            text=self.text,
            token_count=self.token_count,
            start_offset=self.start_offset,
            end_offset=self.end_offset,
            embedding=tuple(float(x) for x in vector),
            embedding_model_version=self.model_version,
            created_at=self.created_at,
        )


@dataclass(frozen=True)
class CandidateBlock:
    """Decoded search candidates of one dimensionality and model version."""

    candidates: Tuple[StoredChunk, ...]
    matrix: np.ndarray

    def __len__(self) -> int:
        return len(self.candidates)


# ---------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------

class CorpusSnapshot:
    """
    Immutable mapping of document id to its ordered, visible chunks.

    ``version`` is unique per snapshot instance within the process, so
    derived structures (decoded matrices, approximate indexes) can be cached
    against it.
    """

    def __init__(
        self,
        documents: Optional[Mapping[str, Tuple[StoredChunk, ...]]] = None,
    ) -> None:
        self._documents: Dict[str, Tuple[StoredChunk, ...]] = dict(documents or {})
        self.version: int = next(_versions)

        self._blocks: Dict[Tuple[int, str], CandidateBlock] = {}
        self._blocks_lock = threading.Lock()

    @classmethod
    def from_chunks(cls, chunks: Iterable[StoredChunk]) -> "CorpusSnapshot":
        grouped: Dict[str, List[StoredChunk]] = {}
        for chunk in chunks:
            grouped.setdefault(chunk.document_id, []).append(chunk)
        return cls(
            {
                doc_id: tuple(sorted(items, key=lambda c: c.chunk_index))
                for doc_id, items in grouped.items()
            }
        )

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def documents(self) -> Mapping[str, Tuple[StoredChunk, ...]]:
        return MappingProxyType(self._documents)

    def document_chunks(self, document_id: str) -> Tuple[StoredChunk, ...]:
        return self._documents.get(document_id, ())

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._documents

    def __iter__(self) -> Iterator[StoredChunk]:
        for document_id in sorted(self._documents):
            yield from self._documents[document_id]

    def __len__(self) -> int:
        return sum(len(chunks) for chunks in self._documents.values())

    def dimensions(self, model_version: str) -> Set[int]:
        """Dimensionalities present among chunks eligible for search."""
        return {c.embedding_dim for c in self if c.is_eligible(model_version)}

    # ------------------------------------------------------------------
    # Copy-on-write
    # ------------------------------------------------------------------

    def with_document(
        self,
        document_id: str,
        chunks: Iterable[StoredChunk],
    ) -> "CorpusSnapshot":
        documents = dict(self._documents)
        ordered = tuple(sorted(chunks, key=lambda c: c.chunk_index))
        if ordered:
            documents[document_id] = ordered
        else:
            documents.pop(document_id, None)
        return CorpusSnapshot(documents)

    def without_document(self, document_id: str) -> "CorpusSnapshot":
        if document_id not in self._documents:
            return self
        documents = dict(self._documents)
        del documents[document_id]
        return CorpusSnapshot(documents)

    # ------------------------------------------------------------------
    # Decoded candidates
    # ------------------------------------------------------------------

    def candidates(self, dim: int, model_version: str) -> CandidateBlock:
        """
        Return eligible chunks of dimensionality ``dim`` with their decoded
        embeddings stacked row-wise.

        Chunks whose blob fails to decode are logged and left out.
        """
        key = (dim, model_version)
        with self._blocks_lock:
            block = self._blocks.get(key)
            if block is None:
                block = self._decode(dim, model_version)
                self._blocks[key] = block
        return block

    def _decode(self, dim: int, model_version: str) -> CandidateBlock:
        candidates: List[StoredChunk] = []
        rows: List[np.ndarray] = []

        for chunk in self:
            if not chunk.is_eligible(model_version) or chunk.embedding_dim != dim:
                continue
            try:
                rows.append(decode_embedding(chunk.embedding, dim))
            except CorruptEmbedding as exc:
                logger.warning("Skipping chunk %s: %s", chunk.id, exc)
                continue
            candidates.append(chunk)

        if rows:
            matrix = np.vstack(rows).astype(EMBEDDING_DTYPE, copy=False)
        else:
            matrix = np.empty((0, dim), dtype=EMBEDDING_DTYPE)
        matrix.setflags(write=False)

        return CandidateBlock(candidates=tuple(candidates), matrix=matrix)
