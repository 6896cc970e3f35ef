"""SQL statement builder.

One method per clause kind. Clauses are rendered in a fixed order no matter
in which order the methods were called:

    SELECT, INSERT INTO, VALUES, UPDATE, DELETE, FROM, SET, WHERE, ORDER BY

Values are never inlined: each one becomes a ``:pN`` bind parameter.
Identifiers are double-quoted (``books.id`` -> ``"books"."id"``), which both
SQLite and PostgreSQL accept.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import IntEnum
from typing import Any

from tallyorm.exceptions import InvalidArgumentError


class Clause(IntEnum):
    """Clause kinds, valued by their position in a rendered statement."""

    SELECT = 1
    INSERT_INTO = 2
    VALUES = 3
    UPDATE = 4
    DELETE = 5
    FROM = 6
    SET = 7
    WHERE = 8
    ORDER_BY = 9


VERBS = (Clause.SELECT, Clause.INSERT_INTO, Clause.UPDATE, Clause.DELETE)

COMPARISON_OPERATORS = frozenset({"=", "!=", "<", "<=", ">", ">="})


def quote_identifier(name: str) -> str:
    """Quote a possibly table-qualified identifier."""
    parts = name.split(".")
    for part in parts:
        if not part or '"' in part:
            raise InvalidArgumentError(f"Invalid SQL identifier: {name!r}", {"identifier": name})
    return ".".join(f'"{part}"' for part in parts)


class QueryBuilder:
    """Accumulates clauses and renders one parameterized statement.

    Example:
        sql, params = (
            QueryBuilder()
            .update("books")
            .set("title", "Dune")
            .where("id", 7)
            .build()
        )
        # UPDATE "books" SET "title" = :p1 WHERE "id" = :p2
    """

    def __init__(self) -> None:
        self._clauses: dict[Clause, list[str]] = {}
        self._params: dict[str, Any] = {}
        self._inserted: list[tuple[str, str]] = []

    def _bind(self, value: Any) -> str:
        name = f"p{len(self._params) + 1}"
        self._params[name] = value
        return f":{name}"

    def _append(self, clause: Clause, part: str) -> QueryBuilder:
        self._clauses.setdefault(clause, []).append(part)
        return self

    def _set_verb(self, clause: Clause, part: str) -> QueryBuilder:
        present = [verb for verb in VERBS if verb in self._clauses and verb != clause]
        if present:
            raise InvalidArgumentError(
                f"Cannot combine {clause.name} with {present[0].name} in one statement.",
                {"clause": clause.name},
            )
        if clause != Clause.SELECT and clause in self._clauses:
            raise InvalidArgumentError(f"{clause.name} is already set.", {"clause": clause.name})
        return self._append(clause, part)

    # === Clauses ===

    def select(self, column: str, alias: str | None = None) -> QueryBuilder:
        part = quote_identifier(column)
        if alias is not None:
            part = f"{part} AS {quote_identifier(alias)}"
        return self._set_verb(Clause.SELECT, part)

    def insert_into(self, table: str) -> QueryBuilder:
        return self._set_verb(Clause.INSERT_INTO, quote_identifier(table))

    def values(self, row: Mapping[str, Any]) -> QueryBuilder:
        """Column values for an INSERT; may be called more than once."""
        for column, value in row.items():
            self._inserted.append((quote_identifier(column), self._bind(value)))
            self._clauses.setdefault(Clause.VALUES, [])
        return self

    def update(self, table: str) -> QueryBuilder:
        return self._set_verb(Clause.UPDATE, quote_identifier(table))

    def delete(self) -> QueryBuilder:
        return self._set_verb(Clause.DELETE, "")

    def delete_from(self, table: str) -> QueryBuilder:
        return self.delete().from_(table)

    def from_(self, *tables: str) -> QueryBuilder:
        for table in tables:
            self._append(Clause.FROM, quote_identifier(table))
        return self

    def set(self, column: str, value: Any) -> QueryBuilder:
        return self._append(Clause.SET, f"{quote_identifier(column)} = {self._bind(value)}")

    def where(self, column: str, value: Any, operator: str = "=") -> QueryBuilder:
        """AND a ``column <op> value`` condition; ``= None`` renders ``IS NULL``."""
        if operator not in COMPARISON_OPERATORS:
            raise InvalidArgumentError(
                f"Unsupported operator '{operator}'. "
                f"Supported: {', '.join(sorted(COMPARISON_OPERATORS))}",
                {"operator": operator},
            )
        if value is None:
            if operator not in ("=", "!="):
                raise InvalidArgumentError(f"Cannot compare NULL with '{operator}'.")
            null_test = "IS NULL" if operator == "=" else "IS NOT NULL"
            return self._append(Clause.WHERE, f"{quote_identifier(column)} {null_test}")
        return self._append(
            Clause.WHERE, f"{quote_identifier(column)} {operator} {self._bind(value)}"
        )

    def where_column(self, left: str, right: str) -> QueryBuilder:
        """AND a ``left = right`` join condition between two columns."""
        return self._append(Clause.WHERE, f"{quote_identifier(left)} = {quote_identifier(right)}")

    def order_by(self, column: str, descending: bool = False) -> QueryBuilder:
        direction = "DESC" if descending else "ASC"
        return self._append(Clause.ORDER_BY, f"{quote_identifier(column)} {direction}")

    # === Rendering ===

    @property
    def params(self) -> dict[str, Any]:
        return dict(self._params)

    def build(self) -> tuple[str, dict[str, Any]]:
        """Render the statement and its bind parameters.

        Raises:
            InvalidArgumentError: If the statement has no verb, or clauses that
                the verb cannot take
        """
        verb = next((v for v in VERBS if v in self._clauses), None)
        if verb is None:
            raise InvalidArgumentError(
                "Statement has no SELECT, INSERT INTO, UPDATE or DELETE clause."
            )
        if verb == Clause.UPDATE and Clause.SET not in self._clauses:
            raise InvalidArgumentError("UPDATE needs at least one SET clause.")
        if verb in (Clause.SELECT, Clause.DELETE) and Clause.FROM not in self._clauses:
            raise InvalidArgumentError(f"{verb.name} needs a FROM clause.")

        parts = []
        for clause in sorted(self._clauses):
            items = self._clauses[clause]
            if clause == Clause.SELECT:
                parts.append("SELECT " + ", ".join(items))
            elif clause == Clause.INSERT_INTO:
                parts.append("INSERT INTO " + items[0])
            elif clause == Clause.VALUES:
                columns = ", ".join(column for column, _ in self._inserted)
                binds = ", ".join(bind for _, bind in self._inserted)
                parts.append(f"({columns}) VALUES ({binds})")
            elif clause == Clause.UPDATE:
                parts.append("UPDATE " + items[0])
            elif clause == Clause.DELETE:
                parts.append("DELETE")
            elif clause == Clause.FROM:
                parts.append("FROM " + ", ".join(items))
            elif clause == Clause.SET:
                parts.append("SET " + ", ".join(items))
            elif clause == Clause.WHERE:
                parts.append("WHERE " + " AND ".join(items))
            elif clause == Clause.ORDER_BY:
                parts.append("ORDER BY " + ", ".join(items))

        if verb == Clause.INSERT_INTO and Clause.VALUES not in self._clauses:
            parts.append("DEFAULT VALUES")
        return " ".join(parts), dict(self._params)

    def __str__(self) -> str:
        return self.build()[0]
