"""
iris-rag

On-device retrieval core: split documents into chunks, embed them, keep
them in SQLite and answer similarity queries.
"""

from .chunking import Chunker, estimate_tokens
from .config import Settings, settings
from .core.concurrency import CancellationToken
from .core.errors import (
    CorruptEmbedding,
    DimensionMismatch,
    EmbeddingUnavailable,
    IndexingCancelled,
    IngestionError,
    NotFound,
    RagError,
    StorageError,
)
from .core.results import (
    Cancelled,
    EmbeddingFailed,
    IngestionFailed,
    NotFoundResult,
    OperationResult,
    StorageFailed,
    Success,
)
from .embeddings import (
    EmbeddingClient,
    EmbeddingOracle,
    HashingEmbeddingOracle,
    HttpEmbeddingOracle,
)
from .engine import RagEngine
from .models import (
    BatchCompleted,
    BatchEvent,
    BatchStarted,
    Chunk,
    DataSource,
    Document,
    DocumentFailed,
    DocumentIndexed,
    DocumentState,
    DocumentStatus,
    EmbeddedChunk,
    IndexStats,
    ScoredChunk,
    TaggedEmbedding,
)
from .search import ExactSearchBackend, HnswSearchBackend, SearchBackend

__all__ = [
    "RagEngine",
    "Settings",
    "settings",
    "Chunker",
    "estimate_tokens",
    "EmbeddingClient",
    "EmbeddingOracle",
    "HashingEmbeddingOracle",
    "HttpEmbeddingOracle",
    "SearchBackend",
    "ExactSearchBackend",
    "HnswSearchBackend",
    "CancellationToken",
    "Document",
    "DataSource",
    "DocumentState",
    "DocumentStatus",
    "Chunk",
    "EmbeddedChunk",
    "ScoredChunk",
    "TaggedEmbedding",
    "IndexStats",
    "BatchEvent",
    "BatchStarted",
    "BatchCompleted",
    "DocumentIndexed",
    "DocumentFailed",
    "OperationResult",
    "Success",
    "NotFoundResult",
    "EmbeddingFailed",
    "IngestionFailed",
    "StorageFailed",
    "Cancelled",
    "RagError",
    "IngestionError",
    "EmbeddingUnavailable",
    "DimensionMismatch",
    "StorageError",
    "NotFound",
    "IndexingCancelled",
    "CorruptEmbedding",
]
