"""
Operation Results

Tagged result types returned by every mutating ``RagEngine`` operation.

Expected failure modes (unknown id, oracle not loaded, malformed input,
storage fault, cancellation) are values, not exceptions. Callers branch on
``result.kind`` or simply check ``result.ok``. Programming errors still
propagate as exceptions.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    EmbeddingUnavailable,
    IndexingCancelled,
    IngestionError,
    NotFound,
    RagError,
    StorageError,
)


class _Result(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def ok(self) -> bool:
        return getattr(self, "kind") == "success"


class Success(_Result):
    kind: Literal["success"] = "success"
    document_id: Optional[str] = None
    chunk_count: Optional[int] = Field(default=None, ge=0)
    changed: bool = True


class NotFoundResult(_Result):
    kind: Literal["not_found"] = "not_found"
    document_id: str
    message: str


class EmbeddingFailed(_Result):
    kind: Literal["embedding_unavailable"] = "embedding_unavailable"
    document_id: Optional[str] = None
    message: str


class IngestionFailed(_Result):
    kind: Literal["ingestion_error"] = "ingestion_error"
    document_id: Optional[str] = None
    message: str


class StorageFailed(_Result):
    kind: Literal["storage_error"] = "storage_error"
    document_id: Optional[str] = None
    message: str


class Cancelled(_Result):
    kind: Literal["cancelled"] = "cancelled"
    document_id: Optional[str] = None
    message: str = "Operation cancelled"


OperationResult = Annotated[
    Union[Success, NotFoundResult, EmbeddingFailed, IngestionFailed, StorageFailed, Cancelled],
    Field(discriminator="kind"),
]


def result_from_error(exc: RagError, document_id: Optional[str] = None) -> OperationResult:
    """
    Map a core exception onto its tagged result.

    Raises
    ------
    TypeError
        If ``exc`` has no result counterpart (e.g. ``DimensionMismatch``).
    """
    message = str(exc)

    if isinstance(exc, NotFound):
        return NotFoundResult(document_id=exc.document_id, message=message)
    if isinstance(exc, EmbeddingUnavailable):
        return EmbeddingFailed(document_id=document_id, message=message)
    if isinstance(exc, IngestionError):
        return IngestionFailed(document_id=exc.document_id or document_id, message=message)
    if isinstance(exc, StorageError):
        return StorageFailed(document_id=document_id, message=message)
    if isinstance(exc, IndexingCancelled):
        return Cancelled(document_id=document_id, message=message or "Operation cancelled")

    raise TypeError(f"No result type for {type(exc).__name__}")
