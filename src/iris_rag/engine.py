"""
RAG Engine

The facade that wires the chunker, embedding client, SQLite vector store and
search backend into one owned, explicitly opened instance.

Indexing flow::

    Document -> Chunker -> EmbeddingClient -> VectorStore (one transaction)
             -> new CorpusSnapshot published

Query flow::

    text -> EmbeddingClient.embed -> SearchBackend over the current snapshot

Design Goals
------------
- No process-wide singleton: every engine owns its database engine, locks
  and snapshot, so several isolated engines can coexist (tests rely on this)
- Mutations of one document id are serialized; distinct ids interleave
- Every database session runs under one store-wide lock (SQLite has a
  single writer, and in-memory databases share one connection)
- Searches never lock: they read whichever snapshot is current
- Expected failures come back as tagged results (``core.results``)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import (
    AsyncIterator,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
)

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .chunking import Chunker
from .config import Settings, settings as default_settings
from .core.concurrency import CancellationToken, KeyedLock
from .core.errors import (
    EmbeddingUnavailable,
    IndexingCancelled,
    IngestionError,
    NotFound,
    RagError,
    StorageError,
)
from .core.results import OperationResult, Success, result_from_error
from .db import VectorStore, apply_migrations, create_engine, create_session_factory
from .db.models import ChunkRecord, DocumentRecord
from .embeddings import EmbeddingClient, EmbeddingOracle
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
)
from .search import CorpusSnapshot, SearchBackend, StoredChunk, create_backend

logger = logging.getLogger("iris_rag.engine")

# Errors an indexing operation reports as a result rather than raising.
_RESULT_ERRORS = (
    IngestionError,
    EmbeddingUnavailable,
    StorageError,
    NotFound,
    IndexingCancelled,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RagEngine:
    """
    On-device retrieval core.

    Usage
    -----
    ::

        async with RagEngine(oracle, config) as engine:
            await engine.index_document(doc)
            hits = await engine.search("where did I park?")
    """

    def __init__(
        self,
        oracle: EmbeddingOracle,
        config: Settings = default_settings,
        *,
        database_url: Optional[str] = None,
        chunker: Optional[Chunker] = None,
        embedding_client: Optional[EmbeddingClient] = None,
        search_backend: Optional[SearchBackend] = None,
    ) -> None:
        """
        Parameters
        ----------
        oracle : EmbeddingOracle
            Embedding model capability. Not closed by the engine.
        config : Settings
            Settings instance. Defaults to the module-level settings.
        database_url : Optional[str]
            Overrides ``config.database_url``.
        chunker, embedding_client, search_backend
            Override the components otherwise built from ``config``.
        """
        self.config = config
        self.oracle = oracle
        self.database_url = database_url or config.database_url

        self.chunker = chunker or Chunker.from_settings(config)
        self.embeddings = embedding_client or EmbeddingClient.from_settings(oracle, config)
        self.backend = search_backend or create_backend(config)

        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None
        self._snapshot = CorpusSnapshot()

        self._doc_locks = KeyedLock()
        self._db_lock = asyncio.Lock()

        # In-flight states; settled states are derived from the database.
        self._states: Dict[str, DocumentState] = {}
        self._deleted: Set[str] = set()
        # Model version the needs_reembedding flags were last computed for.
        self._marked_version: Optional[str] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    @property
    def model_version(self) -> str:
        """Model version of the active embedding oracle."""
        return self.embeddings.model_version

    @property
    def snapshot(self) -> CorpusSnapshot:
        """The snapshot searches currently read."""
        return self._snapshot

    async def open(self) -> None:
        """
        Open the database, apply pending migrations, flag chunks embedded by
        another model version and load the search snapshot.

        Raises
        ------
        StorageError
            If the database cannot be opened or migrated.
        """
        if self._engine is not None:
            return

        engine = create_engine(self.database_url)
        try:
            await apply_migrations(engine)
        except SQLAlchemyError as exc:
            await engine.dispose()
            raise StorageError(f"Cannot open store at {self.database_url}: {exc}") from exc

        self._engine = engine
        self._sessions = create_session_factory(engine)

        try:
            async with self._db_lock:
                async with self._session() as store:
                    stale = await store.mark_stale_embeddings(self.model_version)
                self._marked_version = self.model_version
                self._snapshot = await self._load_snapshot()
        except StorageError:
            await self.close()
            raise

        logger.info(
            "Opened store %s: %d chunks loaded, %d stale (model=%s, backend=%s)",
            self.database_url,
            len(self._snapshot),
            stale,
            self.model_version,
            self.backend.name,
        )
        if self.backend.name == "hnsw":
            logger.info("Approximate HNSW search enabled; results may differ from exact search")

        if stale and self.config.reembed_policy == "eager":
            try:
                count = await self.reembed_stale()
                logger.info("Re-embedded %d stale documents", count)
            except EmbeddingUnavailable as exc:
                logger.warning("Eager re-embedding skipped: %s", exc)

    async def close(self) -> None:
        if self._engine is None:
            return
        engine = self._engine
        self._engine = None
        self._sessions = None
        self._snapshot = CorpusSnapshot()
        self._marked_version = None
        self.backend.reset()
        await engine.dispose()
        logger.info("Closed store %s", self.database_url)

    async def __aenter__(self) -> "RagEngine":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[VectorStore]:
        """
        One transaction. Callers must hold ``_db_lock``.

        SQLAlchemy errors surface as ``StorageError``; the transaction is
        rolled back on any error.
        """
        if self._sessions is None:
            raise RuntimeError("RagEngine is not open; call open() first")

        try:
            async with self._sessions() as session:
                async with session.begin():
                    yield VectorStore(session)
        except SQLAlchemyError as exc:
            raise StorageError(f"Database operation failed: {exc}") from exc

    async def _load_snapshot(self) -> CorpusSnapshot:
        async with self._session() as store:
            records = await store.load_active_chunks()
        return CorpusSnapshot.from_chunks(StoredChunk.from_record(r) for r in records)

    async def _sync_model_version(self) -> None:
        """Re-flag stale chunks if the oracle switched model version since open()."""
        version = self.model_version
        if version == self._marked_version:
            return

        async with self._db_lock:
            async with self._session() as store:
                stale = await store.mark_stale_embeddings(version)
            self._snapshot = await self._load_snapshot()
            self._marked_version = version

        logger.info("Embedding model is now %s: %d chunks flagged stale", version, stale)

    def _require_open(self) -> None:
        if self._engine is None:
            raise RuntimeError("RagEngine is not open; call open() first")

    def _has_stale_chunks(self, document_id: str) -> bool:
        version = self.model_version
        return any(
            not chunk.is_eligible(version)
            for chunk in self._snapshot.document_chunks(document_id)
        )

    @staticmethod
    def _validate(document: Document) -> None:
        if not isinstance(document, Document):
            raise IngestionError(f"Expected a Document, got {type(document).__name__}")

        if not isinstance(document.id, str) or not document.id.strip():
            raise IngestionError("Document id must be a non-blank string")

        if not isinstance(document.content, str):
            raise IngestionError("Document content must be text", document_id=document.id)

        if "\x00" in document.content:
            raise IngestionError("Document content contains NUL bytes", document_id=document.id)

        try:
            document.content.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise IngestionError(
                f"Document content is not encodable as UTF-8: {exc}",
                document_id=document.id,
            ) from exc

    async def _embed_chunks(
        self,
        chunks: Sequence[Chunk],
        cancel_token: Optional[CancellationToken],
    ) -> List[EmbeddedChunk]:
        if not chunks:
            return []

        tagged = await self.embeddings.embed_batch(
            [chunk.text for chunk in chunks],
            cancel_token=cancel_token,
        )
        now = _utcnow()

        return [
            EmbeddedChunk(
                **chunk.model_dump(),
                embedding=emb.vector,
                embedding_model_version=emb.model_version,
                created_at=now,
            )
            for chunk, emb in zip(chunks, tagged)
        ]

    async def _commit_chunk_set(
        self,
        document_id: str,
        embedded: Sequence[EmbeddedChunk],
        source: str,
        content_hash: str,
        metadata: Optional[Dict[str, str]],
    ) -> None:
        """
        Make ``embedded`` the document's visible chunk set.

        A new document is inserted in one transaction. An existing one gets
        its new chunk rows and the generation switch in one transaction, and
        its previous generation removed afterwards; if that cleanup fails the
        rows are unreachable and ``optimize_index`` reclaims them.
        """
        now = _utcnow()
        previous: Optional[int] = None

        async with self._db_lock:
            async with self._session() as store:
                current = await store.get_document(document_id)

                if current is None:
                    generation = 1
                    await store.insert_document(
                        document_id,
                        source=source,
                        content_hash=content_hash,
                        total_chunks=len(embedded),
                        metadata=metadata,
                        created_at=now,
                        generation=generation,
                    )
                else:
                    previous = current.active_generation
                    generation = previous + 1

                records = await store.add_chunks(generation, embedded)

                if current is not None:
                    await store.activate_generation(
                        document_id,
                        generation,
                        source=source,
                        content_hash=content_hash,
                        total_chunks=len(embedded),
                        metadata=metadata,
                        updated_at=now,
                    )

            self._snapshot = self._snapshot.with_document(
                document_id,
                [StoredChunk.from_record(r) for r in records],
            )

        if previous is None:
            return

        try:
            async with self._db_lock:
                async with self._session() as store:
                    removed = await store.delete_generations(document_id, keep_generation=generation)
            logger.debug("Removed %d superseded chunks of %s", removed, document_id)
        except StorageError as exc:
            logger.warning(
                "Could not remove superseded chunks of %s (left for optimize_index): %s",
                document_id,
                exc,
            )

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index_document(
        self,
        document: Document,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OperationResult:
        """
        Chunk, embed and store ``document``.

        Identical content already indexed under the active model is a no-op
        (``Success(changed=False)``), though a changed source or metadata
        is still recorded; changed content replaces the chunk set
        atomically. On failure the document keeps its previous state.
        """
        return await self._index(document, cancel_token, must_exist=False)

    async def update_document(
        self,
        document: Document,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OperationResult:
        """
        Replace the chunk set of an already indexed document.

        Returns ``NotFoundResult`` for an unknown id.
        """
        return await self._index(document, cancel_token, must_exist=True)

    async def _index(
        self,
        document: Document,
        cancel_token: Optional[CancellationToken],
        must_exist: bool,
    ) -> OperationResult:
        self._require_open()

        try:
            self._validate(document)
        except IngestionError as exc:
            logger.warning("Rejected document: %s", exc)
            document_id = getattr(document, "id", None)
            return result_from_error(exc, document_id if isinstance(document_id, str) else None)

        document_id = document.id

        async with self._doc_locks.hold(document_id):
            try:
                return await self._index_locked(document, cancel_token, must_exist)
            except _RESULT_ERRORS as exc:
                logger.warning("Indexing of %s failed: %s", document_id, exc)
                return result_from_error(exc, document_id)
            finally:
                self._states.pop(document_id, None)

    async def _index_locked(
        self,
        document: Document,
        cancel_token: Optional[CancellationToken],
        must_exist: bool,
    ) -> OperationResult:
        document_id = document.id
        new_hash = document.content_hash

        async with self._db_lock:
            async with self._session() as store:
                record = await store.get_document(document_id)

        if record is None and must_exist:
            raise NotFound(document_id)

        if (
            record is not None
            and record.content_hash == new_hash
            and not self._has_stale_chunks(document_id)
        ):
            await self._refresh_details(record, document)
            logger.debug("Document %s unchanged; skipping", document_id)
            return Success(document_id=document_id, chunk_count=record.total_chunks, changed=False)

        self._states[document_id] = (
            DocumentState.INDEXING if record is None else DocumentState.REINDEXING
        )

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        chunks = await asyncio.to_thread(self.chunker.chunk, document)
        embedded = await self._embed_chunks(chunks, cancel_token)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        await self._commit_chunk_set(
            document_id,
            embedded,
            source=document.source.value,
            content_hash=new_hash,
            metadata=dict(document.metadata),
        )
        self._deleted.discard(document_id)

        logger.info(
            "%s document %s (%d chunks)",
            "Indexed" if record is None else "Re-indexed",
            document_id,
            len(embedded),
        )
        return Success(document_id=document_id, chunk_count=len(embedded))

    async def _refresh_details(self, record: DocumentRecord, document: Document) -> None:
        source = document.source.value
        metadata = dict(document.metadata)
        if record.source == source and (record.metadata_ or {}) == metadata:
            return

        async with self._db_lock:
            async with self._session() as store:
                await store.update_document_details(
                    document.id,
                    source=source,
                    metadata=metadata,
                    updated_at=_utcnow(),
                )
        logger.debug("Updated source and metadata of unchanged document %s", document.id)

    async def index_documents(
        self,
        documents: Iterable[Document],
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[BatchEvent]:
        """
        Index documents one after another, yielding progress events.

        Cancellation is checked between documents (and between embedding
        batches inside one); a cancelled document leaves nothing behind and
        the batch ends with ``BatchCompleted(cancelled=True)``.
        """
        docs = list(documents)
        total = len(docs)
        succeeded = 0
        failed = 0
        cancelled = False

        logger.info("Batch indexing %d documents", total)
        yield BatchStarted(total_documents=total)

        for position, document in enumerate(docs, start=1):
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                break

            result = await self.index_document(document, cancel_token)
            progress = position * 100 // total

            if result.kind == "cancelled":
                cancelled = True
                break

            if result.ok:
                succeeded += 1
                yield DocumentIndexed(
                    document_id=result.document_id,
                    chunk_count=result.chunk_count or 0,
                    progress=progress,
                )
            else:
                failed += 1
                yield DocumentFailed(
                    document_id=result.document_id or str(getattr(document, "id", "")),
                    result=result,
                    progress=progress,
                )

        if cancelled:
            logger.info("Batch indexing cancelled after %d documents", succeeded + failed)

        yield BatchCompleted(
            total_documents=total,
            succeeded=succeeded,
            failed=failed,
            cancelled=cancelled,
        )

    async def delete_index(self, document_id: str) -> OperationResult:
        """
        Remove a document with all its chunks and embeddings.

        Returns ``NotFoundResult`` for an unknown id.
        """
        self._require_open()

        async with self._doc_locks.hold(document_id):
            try:
                async with self._db_lock:
                    async with self._session() as store:
                        deleted = await store.delete_document(document_id)
                    if not deleted:
                        raise NotFound(document_id)
                    self._snapshot = self._snapshot.without_document(document_id)
            except (NotFound, StorageError) as exc:
                logger.warning("Delete of %s failed: %s", document_id, exc)
                return result_from_error(exc, document_id)

            self._deleted.add(document_id)

        logger.info("Deleted document %s", document_id)
        return Success(document_id=document_id, chunk_count=0)

    async def reembed_stale(
        self,
        max_documents: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> int:
        """
        Re-embed chunks produced by another model version.

        Chunk text and boundaries are kept; only the vectors are replaced,
        through the same generation switch as an update.

        Returns
        -------
        int
            Number of documents re-embedded.

        Raises
        ------
        EmbeddingUnavailable
            If the oracle fails; documents already done stay done.
        """
        self._require_open()
        await self._sync_model_version()

        async with self._db_lock:
            async with self._session() as store:
                document_ids = await store.stale_document_ids()

        if max_documents is not None:
            document_ids = document_ids[:max_documents]

        count = 0
        for document_id in document_ids:
            if cancel_token is not None and cancel_token.cancelled:
                break
            async with self._doc_locks.hold(document_id):
                try:
                    if await self._reembed_locked(document_id, cancel_token):
                        count += 1
                except IndexingCancelled:
                    break
                finally:
                    self._states.pop(document_id, None)

        return count

    async def _reembed_locked(
        self,
        document_id: str,
        cancel_token: Optional[CancellationToken],
    ) -> bool:
        async with self._db_lock:
            async with self._session() as store:
                record = await store.get_document(document_id)
                rows = await store.load_active_chunks(document_id)

        if record is None:
            return False

        self._states[document_id] = DocumentState.REINDEXING

        chunks = [_chunk_from_record(row) for row in rows]
        embedded = await self._embed_chunks(chunks, cancel_token)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        await self._commit_chunk_set(
            document_id,
            embedded,
            source=record.source,
            content_hash=record.content_hash,
            metadata=record.metadata_,
        )
        logger.debug("Re-embedded %s (%d chunks)", document_id, len(embedded))
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def get_index_stats(self) -> IndexStats:
        self._require_open()
        await self._sync_model_version()

        async with self._db_lock:
            async with self._session() as store:
                stats = await store.get_stats()

        return IndexStats(**stats, embedding_model_version=self.model_version)

    async def optimize_index(self) -> OperationResult:
        """
        Reclaim superseded chunk rows, VACUUM the database and rebuild the
        search snapshot and any approximate index. Query results are
        unchanged.
        """
        self._require_open()

        try:
            async with self._db_lock:
                async with self._session() as store:
                    removed = await store.delete_orphan_generations()
                await self._vacuum()
                self._snapshot = await self._load_snapshot()
                self.backend.reset()
        except StorageError as exc:
            logger.warning("optimize_index failed: %s", exc)
            return result_from_error(exc)

        logger.info("Optimized index: removed %d superseded chunks", removed)
        return Success(chunk_count=len(self._snapshot))

    async def _vacuum(self) -> None:
        # VACUUM cannot run inside a transaction
        try:
            async with self._engine.connect() as conn:
                conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                await conn.exec_driver_sql("VACUUM")
        except SQLAlchemyError as exc:
            logger.warning("VACUUM failed: %s", exc)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_by_embedding(
        self,
        embedding: Sequence[float],
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[ScoredChunk]:
        """
        Rank visible chunks against ``embedding``.

        Raises
        ------
        DimensionMismatch
            If no searchable chunk shares the query's dimensionality.
        """
        self._require_open()

        limit = self.config.default_search_limit if limit is None else limit
        threshold = self.config.default_search_threshold if threshold is None else threshold
        if limit < 0:
            raise ValueError("limit must be >= 0")

        snapshot = self._snapshot
        return await asyncio.to_thread(
            self.backend.search,
            snapshot,
            list(embedding),
            limit,
            threshold,
            self.model_version,
        )

    async def search(
        self,
        query: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[ScoredChunk]:
        """
        Embed ``query`` and rank visible chunks against it.

        Raises
        ------
        EmbeddingUnavailable
            If the query cannot be embedded.
        DimensionMismatch
            If no searchable chunk shares the query's dimensionality.
        """
        self._require_open()
        tagged = await self.embeddings.embed(query)
        return await self.search_by_embedding(tagged.vector, limit, threshold)

    async def retrieve_context(
        self,
        query: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[ScoredChunk]:
        """
        Like ``search`` but never raises a core error: any failure is logged
        and an empty context returned, so prompt assembly can proceed.
        """
        try:
            return await self.search(query, limit, threshold)
        except RagError as exc:
            logger.warning("Context retrieval failed, continuing without context: %s", exc)
            return []

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_document(self, document_id: str) -> Optional[List[Chunk]]:
        """
        Return a document's visible chunks in order, or None if unknown.
        """
        self._require_open()

        async with self._db_lock:
            async with self._session() as store:
                record = await store.get_document(document_id)
                rows = await store.load_active_chunks(document_id) if record else []

        if record is None:
            return None

        return [_chunk_from_record(row) for row in rows]

    async def get_document_status(self, document_id: str) -> DocumentStatus:
        self._require_open()

        async with self._db_lock:
            async with self._session() as store:
                record = await store.get_document(document_id)

        return self._status(document_id, record)

    async def list_documents(self) -> List[DocumentStatus]:
        self._require_open()

        async with self._db_lock:
            async with self._session() as store:
                records = await store.list_documents()

        return [self._status(record.id, record) for record in records]

    def _status(self, document_id: str, record: Optional[DocumentRecord]) -> DocumentStatus:
        transient = self._states.get(document_id)

        if record is None:
            if transient is not None:
                state = transient
            elif document_id in self._deleted:
                state = DocumentState.DELETED
            else:
                state = DocumentState.UNINDEXED
            return DocumentStatus(document_id=document_id, state=state)

        return DocumentStatus(
            document_id=document_id,
            state=transient or DocumentState.INDEXED,
            source=DataSource(record.source),
            content_hash=record.content_hash,
            total_chunks=record.total_chunks,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


def _chunk_from_record(row: ChunkRecord) -> Chunk:
    return Chunk(
        id=row.id,
        document_id=row.document_id,
        chunk_index=row.chunk_index,
        text=row.content,
        token_count=row.token_count,
        start_offset=row.start_offset,
        end_offset=row.end_offset,
    )
