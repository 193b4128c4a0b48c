"""
Database Package

SQLAlchemy async engine/session helpers, table definitions, schema
migrations and the ``VectorStore`` repository for the on-device SQLite
database.
"""

from .session import create_engine, create_session_factory
from .models import Base, ChunkRecord, DocumentRecord, SchemaVersion
from .migrations import LATEST_VERSION, apply_migrations, current_version
from .vector_store import VectorStore

__all__ = [
    "create_engine",
    "create_session_factory",
    "Base",
    "ChunkRecord",
    "DocumentRecord",
    "SchemaVersion",
    "LATEST_VERSION",
    "apply_migrations",
    "current_version",
    "VectorStore",
]
