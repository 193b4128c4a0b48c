"""
SQLAlchemy Models

Defines the persisted layout of the RAG store:

- ``documents``       one row per indexed document
- ``chunks``          chunk text + embedding blob, one row per chunk per
                      generation
- ``schema_version``  migrations applied to this database

A document's visible chunk set is the set of rows whose ``generation``
equals the document's ``active_generation``. Updates insert a new
generation, flip ``active_generation``, then delete the old rows, so a
reader never sees a mix of two chunk sets.

This module mirrors the DDL in ``db.migrations``; change both together.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class UtcDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamps.

    SQLite keeps no offset, so values are stored as naive UTC and tagged
    with UTC again on load.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# ---------------------------------------------------------------------
# Document Model
# ---------------------------------------------------------------------

class DocumentRecord(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    metadata_: Mapped[Optional[Dict[str, str]]] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)

    chunks: Mapped[List["ChunkRecord"]] = relationship(
        "ChunkRecord",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# ---------------------------------------------------------------------
# Chunk Model
# ---------------------------------------------------------------------

class ChunkRecord(Base):
    """
    A chunk of document text with its embedding.

    ``embedding`` holds ``embedding_dim`` native-endian float32 values.
    """
    __tablename__ = "chunks"

    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(300), nullable=False)
    document_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    end_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    embedding: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    embedding_dim: Mapped[int] = mapped_column(Integer, nullable=False)
    embedding_model_version: Mapped[str] = mapped_column(String(128), nullable=False)
    needs_reembedding: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)

    document: Mapped["DocumentRecord"] = relationship("DocumentRecord", back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("document_id", "generation", "chunk_index", name="uq_chunk_position"),
        Index("idx_chunks_document_generation", "document_id", "generation"),
        Index("idx_chunks_model_version", "embedding_model_version"),
    )


# ---------------------------------------------------------------------
# Schema Version Model
# ---------------------------------------------------------------------

class SchemaVersion(Base):
    __tablename__ = "schema_version"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
