"""Table definitions for a registry.

Builds SQLAlchemy ``Table`` objects following the naming convention:

- one table per hierarchy level: ``id`` primary key, ``parent_id`` on derived
  levels, ``created_at``/``altered_at`` on root levels, then scalar fields
- many-to-one and one-to-many key columns on the table that holds them
- one junction table per many-to-many pair: both key columns (composite
  primary key), ``count``, then metadata columns

Only ``parent_id`` gets a foreign key constraint. Relation rows may outlive
the entities they point at, since deleting an entity leaves them in place.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    Boolean,
    Column,
    Engine,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.schema import CreateIndex, CreateTable

from tallyorm import naming
from tallyorm.exceptions import InvalidConfigurationError

if TYPE_CHECKING:
    from sqlalchemy import Connection

    from tallyorm.schema.registry import Registry

logger = logging.getLogger(__name__)

# Mapping from TallyORM field types to SQLAlchemy column types
FIELD_TYPE_MAP = {
    "string": lambda: String(255),
    "text": lambda: Text(),
    "int": lambda: Integer(),
    "float": lambda: Float(),
    "bool": lambda: Boolean(),
}

TIMESTAMP_LENGTH = 40


def build_metadata(registry: Registry) -> MetaData:
    """Describe every table the registry's types and relations need."""
    metadata = MetaData()
    key_columns: dict[str, list[str]] = {}

    for type_name in registry.list_types():
        for definition in registry.relations_referencing(type_name):
            table = definition.table_name
            column = definition.column_name
            if column is not None and column not in key_columns.setdefault(table, []):
                key_columns[table].append(column)

    for type_name in registry.list_types():
        entity_type = registry.get_type(type_name)
        table_name = entity_type.table_name
        columns: list[Column[Any]] = [
            Column(naming.ID_COLUMN, Integer, primary_key=True, autoincrement=True)
        ]
        if entity_type.is_root:
            columns += [
                Column(naming.CREATED_AT_COLUMN, String(TIMESTAMP_LENGTH), nullable=True),
                Column(naming.ALTERED_AT_COLUMN, String(TIMESTAMP_LENGTH), nullable=True),
            ]
        else:
            parent_table = naming.table_name(entity_type.parent)  # type: ignore[arg-type]
            columns.append(
                Column(
                    naming.parent_key_column(),
                    Integer,
                    ForeignKey(f"{parent_table}.{naming.ID_COLUMN}"),
                    nullable=False,
                )
            )

        for field_name in entity_type.fields:
            column_type = FIELD_TYPE_MAP[entity_type.field_type(field_name)]()
            columns.append(Column(field_name, column_type, nullable=True))

        indexes = []
        taken = {column.name for column in columns}
        for column_name in key_columns.get(table_name, []):
            if column_name in taken:
                raise InvalidConfigurationError(
                    f"Key column '{column_name}' clashes with a column of '{table_name}'.",
                    {"table_name": table_name, "column": column_name},
                )
            taken.add(column_name)
            columns.append(Column(column_name, Integer, nullable=True))
            indexes.append(Index(f"ix_{table_name}_{column_name}", column_name))

        Table(table_name, metadata, *columns, *indexes)

    for definition in registry.many_to_many_relations():
        junction = definition.junction_table
        if junction in metadata.tables:
            continue
        _, first, second = naming.junction_layout(
            definition.owner_type, definition.owner_name, definition.peer_type, definition.peer_name
        )
        Table(
            junction,
            metadata,
            Column(first, Integer, primary_key=True, autoincrement=False),
            Column(second, Integer, primary_key=True, autoincrement=False),
            Column(naming.COUNT_COLUMN, Integer, nullable=False, default=1),
            *[Column(name, Text, nullable=True) for name in definition.meta_columns],
        )

    return metadata


def create_tables(bind: Engine | Connection, registry: Registry) -> list[str]:
    """Create every missing table; returns the names of all tables described.

    ``bind`` may be an engine or an open connection (an in-memory SQLite
    database only exists on the connection that created it). A connection is
    committed afterwards.
    """
    metadata = build_metadata(registry)
    if isinstance(bind, Engine):
        with bind.begin() as conn:
            metadata.create_all(conn)
    else:
        metadata.create_all(bind)
        bind.commit()
    logger.info(f"Ensured {len(metadata.tables)} tables")
    return list(metadata.tables)


def render_ddl(registry: Registry, dialect: str = "sqlite") -> str:
    """CREATE TABLE / CREATE INDEX statements for ``dialect`` (sqlite or postgresql)."""
    dialects = {"sqlite": sqlite.dialect, "postgresql": postgresql.dialect}
    if dialect not in dialects:
        raise InvalidConfigurationError(
            f"Unsupported dialect '{dialect}'. Supported: {', '.join(dialects)}",
            {"dialect": dialect},
        )
    compiled_for = dialects[dialect]()
    metadata = build_metadata(registry)
    statements = []
    for table in metadata.sorted_tables:
        statements.append(str(CreateTable(table).compile(dialect=compiled_for)).strip() + ";")
        for index in sorted(table.indexes, key=lambda i: i.name or ""):
            statements.append(str(CreateIndex(index).compile(dialect=compiled_for)).strip() + ";")
    return "\n\n".join(statements)
