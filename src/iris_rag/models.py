"""
RAG Data Models

This module defines the canonical data model shared by every component of
the RAG core:

- ``Document``       what a document source hands to the core
- ``Chunk``          an ordered, bounded segment of a document's text
- ``EmbeddedChunk``  a chunk plus the vector produced for it
- ``ScoredChunk``    a search hit (never persisted)

plus the status, statistics and batch-progress records returned by the
engine. All models are immutable once created.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from .core.results import OperationResult


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def content_hash(text: str) -> str:
    """SHA-256 hex digest of ``text`` (lone surrogates are hashed verbatim)."""
    return hashlib.sha256(text.encode("utf-8", "surrogatepass")).hexdigest()


def make_chunk_id(document_id: str, chunk_index: int) -> str:
    return f"{document_id}_chunk_{chunk_index}"


# ---------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------

class DataSource(str, Enum):
    """Where a document came from. Informational only."""

    NOTE = "note"
    PDF = "pdf"
    SMS = "sms"
    EMAIL = "email"
    CALENDAR = "calendar"
    CONTACT = "contact"
    FILE = "file"
    MANUAL = "manual"
    SCREEN_CAPTURE = "screen_capture"
    MESSAGE = "message"


class DocumentState(str, Enum):
    UNINDEXED = "unindexed"
    INDEXING = "indexing"
    INDEXED = "indexed"
    REINDEXING = "reindexing"
    DELETED = "deleted"


# ---------------------------------------------------------------------
# Documents and chunks
# ---------------------------------------------------------------------

class Document(BaseModel):
    """
    A text document submitted for indexing.

    The ``id`` is chosen by the document source and must be stable: it is
    how updates and deletes address the document.
    """

    id: str = Field(..., min_length=1, description="Stable, source-assigned document id.")
    content: str = Field(..., description="Full plain-text content.")
    source: DataSource = DataSource.MANUAL
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def content_hash(self) -> str:
        return content_hash(self.content)


class Chunk(BaseModel):
    """A bounded segment of a document. ``chunk_index`` is contiguous from 0."""

    id: str = Field(..., min_length=1)
    document_id: str = Field(..., min_length=1)
    chunk_index: int = Field(..., ge=0)
    text: str = Field(..., min_length=1)
    token_count: int = Field(..., ge=0)
    start_offset: int = Field(default=0, ge=0)
    end_offset: int = Field(default=0, ge=0)

    model_config = ConfigDict(extra="forbid", frozen=True)


class EmbeddedChunk(Chunk):
    embedding: Tuple[float, ...]
    embedding_model_version: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def dimension(self) -> int:
        return len(self.embedding)


class ScoredChunk(BaseModel):
    """A search hit: a stored chunk and its cosine similarity to the query."""

    chunk: EmbeddedChunk
    score: float

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def id(self) -> str:
        return self.chunk.id

    @property
    def document_id(self) -> str:
        return self.chunk.document_id

    @property
    def text(self) -> str:
        return self.chunk.text


class TaggedEmbedding(BaseModel):
    """A vector together with the oracle model version that produced it."""

    vector: Tuple[float, ...]
    model_version: str

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def dimension(self) -> int:
        return len(self.vector)


# ---------------------------------------------------------------------
# Status and statistics
# ---------------------------------------------------------------------

class IndexStats(BaseModel):
    document_count: int = Field(..., ge=0)
    chunk_count: int = Field(..., ge=0)
    bytes_used: int = Field(..., ge=0)
    stale_chunk_count: int = Field(default=0, ge=0)
    last_updated: Optional[datetime] = None
    embedding_model_version: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True)


class DocumentStatus(BaseModel):
    document_id: str
    state: DocumentState
    source: Optional[DataSource] = None
    content_hash: Optional[str] = None
    total_chunks: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(extra="forbid", frozen=True)


# ---------------------------------------------------------------------
# Batch indexing progress
# ---------------------------------------------------------------------

class BatchStarted(BaseModel):
    event: Literal["started"] = "started"
    total_documents: int

    model_config = ConfigDict(frozen=True)


class DocumentIndexed(BaseModel):
    event: Literal["document_indexed"] = "document_indexed"
    document_id: str
    chunk_count: int
    progress: int = Field(..., ge=0, le=100)

    model_config = ConfigDict(frozen=True)


class DocumentFailed(BaseModel):
    event: Literal["document_failed"] = "document_failed"
    document_id: str
    result: OperationResult
    progress: int = Field(..., ge=0, le=100)

    model_config = ConfigDict(frozen=True)


class BatchCompleted(BaseModel):
    event: Literal["completed"] = "completed"
    total_documents: int
    succeeded: int
    failed: int
    cancelled: bool = False

    model_config = ConfigDict(frozen=True)


BatchEvent = Union[BatchStarted, DocumentIndexed, DocumentFailed, BatchCompleted]
