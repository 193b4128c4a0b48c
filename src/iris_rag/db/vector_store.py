"""
Vector Store

SQLite-backed persistence for documents, chunks and embeddings.

This class is a thin, session-bound repository: it issues statements on the
``AsyncSession`` it was given and never commits on its own. Transaction
boundaries, locking and the in-memory search snapshot are owned by
``iris_rag.engine.RagEngine``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import LargeBinary, and_, case, cast, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import EmbeddedChunk
from .codec import encode_embedding
from .models import ChunkRecord, DocumentRecord


class VectorStore:
    """
    Repository for the ``documents`` and ``chunks`` tables.
    """

    def __init__(self, session: AsyncSession) -> None:
        """
        Initialize with an async database session.

        Parameters
        ----------
        session : AsyncSession
            SQLAlchemy async session for database operations.
        """
        self._session = session

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        return await self._session.get(DocumentRecord, document_id)

    async def list_documents(self) -> List[DocumentRecord]:
        result = await self._session.execute(
            select(DocumentRecord).order_by(DocumentRecord.id)
        )
        return list(result.scalars().all())

    async def insert_document(
        self,
        document_id: str,
        source: str,
        content_hash: str,
        total_chunks: int,
        metadata: Optional[Dict[str, str]],
        created_at: datetime,
        generation: int = 1,
    ) -> DocumentRecord:
        record = DocumentRecord(
            id=document_id,
            source=source,
            content_hash=content_hash,
            total_chunks=total_chunks,
            active_generation=generation,
            metadata_=metadata or None,
            created_at=created_at,
            updated_at=created_at,
        )
        self._session.add(record)
        await self._session.flush()
        return record

    async def activate_generation(
        self,
        document_id: str,
        generation: int,
        source: str,
        content_hash: str,
        total_chunks: int,
        metadata: Optional[Dict[str, str]],
        updated_at: datetime,
    ) -> int:
        """
        Point a document at a new chunk generation.

        This single-row update is the visibility switch between the old and
        new chunk sets.
        """
        stmt = (
            update(DocumentRecord)
            .where(DocumentRecord.id == document_id)
            .values(
                active_generation=generation,
                source=source,
                content_hash=content_hash,
                total_chunks=total_chunks,
                metadata_=metadata or None,
                updated_at=updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def update_document_details(
        self,
        document_id: str,
        source: str,
        metadata: Optional[Dict[str, str]],
        updated_at: datetime,
    ) -> int:
        """Replace source and metadata of a document; chunks are untouched."""
        stmt = (
            update(DocumentRecord)
            .where(DocumentRecord.id == document_id)
            .values(source=source, metadata_=metadata or None, updated_at=updated_at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def delete_document(self, document_id: str) -> int:
        """
        Delete a document row. Its chunks go with it (``ON DELETE CASCADE``).

        Returns the number of deleted document rows (0 or 1).
        """
        stmt = delete(DocumentRecord).where(DocumentRecord.id == document_id).execution_options(
            synchronize_session=False
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def add_chunks(
        self,
        generation: int,
        chunks: Sequence[EmbeddedChunk],
    ) -> List[ChunkRecord]:
        """
        Insert embedded chunks under ``generation``.

        Returns the flushed records (primary keys assigned).
        """
        records: List[ChunkRecord] = []

        for chunk in chunks:
            record = ChunkRecord(
                id=chunk.id,
                document_id=chunk.document_id,
                generation=generation,
                chunk_index=chunk.chunk_index,
                content=chunk.text,
                token_count=chunk.token_count,
                start_offset=chunk.start_offset,
                end_offset=chunk.end_offset,
                embedding=encode_embedding(chunk.embedding),
                embedding_dim=len(chunk.embedding),
                embedding_model_version=chunk.embedding_model_version,
                needs_reembedding=False,
                created_at=chunk.created_at,
            )
            self._session.add(record)
            records.append(record)

        await self._session.flush()
        return records

    async def delete_generations(
        self,
        document_id: str,
        keep_generation: int,
    ) -> int:
        """
        Delete every chunk row of ``document_id`` outside ``keep_generation``.
        """
        stmt = delete(ChunkRecord).where(
            ChunkRecord.document_id == document_id,
            ChunkRecord.generation != keep_generation,
        ).execution_options(synchronize_session=False)
        result = await self._session.execute(stmt)
        return result.rowcount

    async def delete_orphan_generations(self) -> int:
        """
        Delete chunk rows not in their document's active generation.

        These are left behind only when an update was interrupted between
        the visibility switch and the cleanup of the old generation.
        """
        active = (
            select(DocumentRecord.id)
            .where(
                DocumentRecord.id == ChunkRecord.document_id,
                DocumentRecord.active_generation == ChunkRecord.generation,
            )
            .correlate(ChunkRecord)
            .exists()
        )
        stmt = delete(ChunkRecord).where(~active).execution_options(
            synchronize_session=False
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def load_active_chunks(
        self,
        document_id: Optional[str] = None,
    ) -> List[ChunkRecord]:
        """
        Return the visible chunk rows, ordered by document then chunk index.
        """
        stmt = (
            select(ChunkRecord)
            .join(
                DocumentRecord,
                and_(
                    DocumentRecord.id == ChunkRecord.document_id,
                    DocumentRecord.active_generation == ChunkRecord.generation,
                ),
            )
            .order_by(ChunkRecord.document_id, ChunkRecord.chunk_index)
        )
        if document_id is not None:
            stmt = stmt.where(ChunkRecord.document_id == document_id)

        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_stale_embeddings(self, active_model_version: str) -> int:
        """
        Flag chunks embedded by any other model version for re-embedding.

        Chunks already produced by ``active_model_version`` are untouched
        (and un-flagged, should the active model have been switched back).

        Returns the number of chunks now flagged.
        """
        await self._session.execute(
            update(ChunkRecord)
            .where(
                ChunkRecord.embedding_model_version != active_model_version,
                ChunkRecord.needs_reembedding.is_(False),
            )
            .values(needs_reembedding=True)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(
            update(ChunkRecord)
            .where(
                ChunkRecord.embedding_model_version == active_model_version,
                ChunkRecord.needs_reembedding.is_(True),
            )
            .values(needs_reembedding=False)
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(
            select(func.count()).select_from(ChunkRecord).where(
                ChunkRecord.needs_reembedding.is_(True)
            )
        )
        return result.scalar() or 0

    async def stale_document_ids(self) -> List[str]:
        stmt = (
            select(ChunkRecord.document_id)
            .where(ChunkRecord.needs_reembedding.is_(True))
            .distinct()
            .order_by(ChunkRecord.document_id)
        )
        result = await self._session.execute(stmt)
        return [row[0] for row in result.all()]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict:
        """
        Return statistics about the visible contents of the store.

        ``bytes_used`` counts UTF-8 chunk text plus embedding blob bytes.
        """
        doc_stmt = select(
            func.count(DocumentRecord.id),
            func.max(DocumentRecord.updated_at),
        )
        doc_row = (await self._session.execute(doc_stmt)).one()

        chunk_stmt = (
            select(
                func.count(ChunkRecord.pk),
                func.coalesce(
                    func.sum(
                        func.length(cast(ChunkRecord.content, LargeBinary))
                        + func.length(ChunkRecord.embedding)
                    ),
                    0,
                ),
                func.coalesce(
                    func.sum(case((ChunkRecord.needs_reembedding.is_(True), 1), else_=0)),
                    0,
                ),
            )
            .join(
                DocumentRecord,
                and_(
                    DocumentRecord.id == ChunkRecord.document_id,
                    DocumentRecord.active_generation == ChunkRecord.generation,
                ),
            )
        )
        chunk_row = (await self._session.execute(chunk_stmt)).one()

        return {
            "document_count": doc_row[0] or 0,
            "last_updated": doc_row[1],
            "chunk_count": chunk_row[0] or 0,
            "bytes_used": int(chunk_row[1] or 0),
            "stale_chunk_count": int(chunk_row[2] or 0),
        }
