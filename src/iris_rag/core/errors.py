"""
Error Types

This module defines the exception hierarchy used inside the RAG core.

Design Goals
------------
- One exception per failure kind, all rooted at ``RagError``
- Library and driver errors (httpx, SQLAlchemy) never leak past the
  component boundary that caught them; they are chained with ``from``
- Expected failures are converted into tagged results by the engine
  (see ``core.results``); exceptions stay internal to the core
"""

from __future__ import annotations

from typing import Optional


class RagError(RuntimeError):
    """Base error for all RAG core failures."""


class IngestionError(RagError):
    """Raised when a document is malformed or its text cannot be read."""

    def __init__(self, message: str, document_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.document_id = document_id


class EmbeddingUnavailable(RagError):
    """Raised when the embedding oracle is not ready or fails to answer."""


class DimensionMismatch(RagError):
    """
    Raised when a query cannot be compared against any stored embedding.

    Individual mismatching candidates are silently excluded; this error is
    only raised when *every* candidate was excluded for that reason.
    """

    def __init__(self, query_dim: int, stored_dims: Optional[set] = None) -> None:
        dims = sorted(stored_dims or ())
        super().__init__(
            f"Query dimensionality {query_dim} matches no stored embedding "
            f"(stored: {dims})"
        )
        self.query_dim = query_dim
        self.stored_dims = set(dims)


class StorageError(RagError):
    """Raised on database or filesystem faults."""


class NotFound(RagError):
    """Raised when a document id is unknown."""

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class IndexingCancelled(RagError):
    """Raised when a cancellation token is tripped between units of work."""


class CorruptEmbedding(RagError):
    """Raised when a stored embedding blob cannot be decoded."""
