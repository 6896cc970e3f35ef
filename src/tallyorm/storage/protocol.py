"""Store contract consumed by the reconciliation engine."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Store(Protocol):
    """Executes parameterized SQL.

    Statements use ``:name`` placeholders. Failures raise StorageError.
    """

    def execute(self, sql: str, params: Mapping[str, Any] | None = None) -> int:
        """Run a write statement and return the affected row count."""
        ...

    def query(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        """Run a read statement and return rows as dicts keyed by column label."""
        ...

    def last_inserted_identity(self) -> Any:
        """Identity generated by the most recent INSERT."""
        ...

    def escape(self, value: Any) -> str:
        """Render ``value`` as a safe SQL literal (for stores without binding)."""
        ...
