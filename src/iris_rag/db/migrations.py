"""
Schema Migrations

Numbered, forward-only migrations for the SQLite store. Each migration runs
in its own transaction together with the ``schema_version`` row that records
it, so a migration is applied exactly once even if the process dies midway.

Version history
---------------
1. Initial ``documents`` / ``chunks`` layout, one chunk row per chunk id.
2. Generational chunk sets (``active_generation`` / ``generation``), chunk
   token counts and offsets, stored embedding dimensionality and the
   ``needs_reembedding`` marker. Existing chunk rows are copied as-is into
   generation 1; their blobs are not touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy import Connection, select, text
from sqlalchemy.ext.asyncio import AsyncEngine

from ..chunking.chunker import estimate_tokens
from .models import SchemaVersion

logger = logging.getLogger("iris_rag.migrations")


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    apply: Callable[[Connection], None]


# ---------------------------------------------------------------------
# Migration steps
# ---------------------------------------------------------------------

def _v1_initial_layout(conn: Connection) -> None:
    conn.execute(text("""
        CREATE TABLE documents (
            id VARCHAR(255) NOT NULL PRIMARY KEY,
            source VARCHAR(32) NOT NULL,
            content_hash VARCHAR(64) NOT NULL,
            total_chunks INTEGER NOT NULL DEFAULT 0,
            created_at DATETIME NOT NULL,
            updated_at DATETIME NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE chunks (
            id VARCHAR(300) NOT NULL PRIMARY KEY,
            document_id VARCHAR(255) NOT NULL
                REFERENCES documents (id) ON DELETE CASCADE,
            chunk_index INTEGER NOT NULL,
            content TEXT NOT NULL,
            embedding BLOB NOT NULL,
            embedding_model_version VARCHAR(128) NOT NULL,
            created_at DATETIME NOT NULL
        )
    """))
    conn.execute(text("CREATE INDEX idx_chunks_v1_document ON chunks (document_id)"))


def _v2_generational_chunks(conn: Connection) -> None:
    conn.execute(text(
        "ALTER TABLE documents ADD COLUMN active_generation INTEGER NOT NULL DEFAULT 1"
    ))
    conn.execute(text("ALTER TABLE documents ADD COLUMN metadata JSON"))

    conn.execute(text("ALTER TABLE chunks RENAME TO chunks_v1"))
    conn.execute(text("""
        CREATE TABLE chunks (
            pk INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
            id VARCHAR(300) NOT NULL,
            document_id VARCHAR(255) NOT NULL
                REFERENCES documents (id) ON DELETE CASCADE,
            generation INTEGER NOT NULL DEFAULT 1,
            chunk_index INTEGER NOT NULL,
            content TEXT NOT NULL,
            token_count INTEGER NOT NULL DEFAULT 0,
            start_offset INTEGER NOT NULL DEFAULT 0,
            end_offset INTEGER NOT NULL DEFAULT 0,
            embedding BLOB NOT NULL,
            embedding_dim INTEGER NOT NULL,
            embedding_model_version VARCHAR(128) NOT NULL,
            needs_reembedding BOOLEAN NOT NULL DEFAULT 0,
            created_at DATETIME NOT NULL,
            CONSTRAINT uq_chunk_position UNIQUE (document_id, generation, chunk_index)
        )
    """))

    # Offsets of v1 chunks were never recorded; span the chunk text itself.
    conn.execute(text("""
        INSERT INTO chunks (
            id, document_id, generation, chunk_index, content,
            start_offset, end_offset, embedding, embedding_dim,
            embedding_model_version, needs_reembedding, created_at
        )
        SELECT
            id, document_id, 1, chunk_index, content,
            0, length(content), embedding, length(embedding) / 4,
            embedding_model_version, 0, created_at
        FROM chunks_v1
        ORDER BY document_id, chunk_index
    """))

    rows = conn.execute(text("SELECT pk, content FROM chunks")).all()
    if rows:
        conn.execute(
            text("UPDATE chunks SET token_count = :token_count WHERE pk = :pk"),
            [{"pk": row.pk, "token_count": estimate_tokens(row.content)} for row in rows],
        )

    conn.execute(text("DROP TABLE chunks_v1"))
    conn.execute(text(
        "CREATE INDEX idx_chunks_document_generation ON chunks (document_id, generation)"
    ))
    conn.execute(text(
        "CREATE INDEX idx_chunks_model_version ON chunks (embedding_model_version)"
    ))
    logger.info("Copied %d existing chunks into generation 1", len(rows))


MIGRATIONS: List[Migration] = [
    Migration(1, "initial documents/chunks layout", _v1_initial_layout),
    Migration(2, "generational chunk sets, offsets and re-embedding markers", _v2_generational_chunks),
]

LATEST_VERSION = MIGRATIONS[-1].version


# ---------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------

async def applied_versions(engine: AsyncEngine) -> List[int]:
    async with engine.begin() as conn:
        await conn.run_sync(SchemaVersion.__table__.create, checkfirst=True)
        result = await conn.execute(select(SchemaVersion.version).order_by(SchemaVersion.version))
        return [row[0] for row in result.all()]


async def current_version(engine: AsyncEngine) -> int:
    versions = await applied_versions(engine)
    return versions[-1] if versions else 0


async def apply_migrations(
    engine: AsyncEngine,
    target_version: Optional[int] = None,
) -> List[int]:
    """
    Apply every pending migration up to ``target_version`` (default: latest).

    Returns
    -------
    List[int]
        Versions applied by this call, in order. Empty if up to date.
    """
    target = LATEST_VERSION if target_version is None else target_version
    done = set(await applied_versions(engine))
    applied: List[int] = []

    for migration in MIGRATIONS:
        if migration.version > target or migration.version in done:
            continue

        async with engine.begin() as conn:
            await conn.run_sync(migration.apply)
            await conn.execute(
                SchemaVersion.__table__.insert().values(
                    version=migration.version,
                    description=migration.description,
                    applied_at=datetime.now(timezone.utc),
                )
            )

        logger.info(
            "Applied schema migration %d: %s",
            migration.version,
            migration.description,
        )
        applied.append(migration.version)

    return applied
