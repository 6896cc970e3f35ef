"""Storage for TallyORM.

- Store: the contract the reconciliation engine writes through
- SQLAlchemyStore: PostgreSQL / SQLite implementation
- RecordingStore: wrapper logging the statements a store receives
- ddl: table definitions for a registry
"""

from tallyorm.storage.ddl import build_metadata, create_tables, render_ddl
from tallyorm.storage.protocol import Store
from tallyorm.storage.recording import RecordingStore
from tallyorm.storage.sqlalchemy_store import SQLAlchemyStore, normalize_url

__all__ = [
    "RecordingStore",
    "SQLAlchemyStore",
    "Store",
    "build_metadata",
    "create_tables",
    "normalize_url",
    "render_ddl",
]
