"""Store wrapper that keeps a log of the statements it forwards."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from tallyorm.storage.protocol import Store


class RecordingStore:
    """Forwards to another store and records every ``(sql, params)`` pair.

    Handy for checking which writes a save issued:

        store = RecordingStore(SQLAlchemyStore(url))
        engine = ReconciliationEngine(registry, store)
        engine.save(book)
        store.writes_to("r__authors__books")
    """

    def __init__(self, inner: Store) -> None:
        self.inner = inner
        self.statements: list[tuple[str, dict[str, Any]]] = []

    def execute(self, sql: str, params: Mapping[str, Any] | None = None) -> int:
        self.statements.append((sql, dict(params or {})))
        return self.inner.execute(sql, params)

    def query(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        self.statements.append((sql, dict(params or {})))
        return self.inner.query(sql, params)

    def last_inserted_identity(self) -> Any:
        return self.inner.last_inserted_identity()

    def escape(self, value: Any) -> str:
        return self.inner.escape(value)

    def reads(self) -> list[str]:
        return [sql for sql, _ in self.statements if sql.startswith("SELECT")]

    def writes(self) -> list[str]:
        return [sql for sql, _ in self.statements if not sql.startswith("SELECT")]

    def writes_to(self, table: str) -> list[str]:
        """Write statements that name ``table``."""
        return [sql for sql in self.writes() if f'"{table}"' in sql]

    def reset(self) -> None:
        self.statements.clear()
