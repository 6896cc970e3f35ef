"""Core types and specifications for TallyORM.

Input specs are what a schema file (or a caller) passes in; info types are
what ``describe()`` and the CLI hand back. All are JSON-serializable.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class RelationKind(StrEnum):
    """Relationship kinds between entity types."""

    ONE_TO_MANY = "one_to_many"  # e.g., Author -> Books (peer holds the FK)
    MANY_TO_ONE = "many_to_one"  # e.g., Book -> Publisher (owner holds the FK)
    MANY_TO_MANY = "many_to_many"  # e.g., Book <-> Tag (junction table)

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid relation kind values."""
        return [k.value for k in cls]


class FieldType(StrEnum):
    """Column types a scalar field can be declared with."""

    STRING = "string"
    TEXT = "text"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid field type values."""
        return [t.value for t in cls]


class LoadState(StrEnum):
    """Whether a relation group's ``loaded`` multiset reflects storage."""

    UNLOADED = "unloaded"
    LOADED = "loaded"


class RelationSpec(BaseModel):
    """Specification for a relation registration.

    ``kind`` is kept as a plain string so that a bad value is reported as an
    InvalidConfigurationError by the registry rather than a pydantic error.
    """

    kind: str = Field(..., description="one_to_many, many_to_one or many_to_many")
    owner_type: str = Field(..., description="Declaring entity type (PascalCase)")
    owner_name: str = Field(..., description="Role name of the owner (e.g., 'author')")
    peer_type: str = Field(..., description="Related entity type (PascalCase)")
    peer_name: str = Field(..., description="Role name of the peer; also the relation name")
    min_count: int = Field(default=0, description="Minimum number of related rows")
    max_count: int | None = Field(
        default=None, description="Maximum related rows (None = unbounded)"
    )
    meta_columns: list[str] = Field(
        default_factory=list, description="Extra junction columns (many_to_many only)"
    )


class EntityTypeSpec(BaseModel):
    """Specification for an entity type."""

    name: str = Field(..., description="Type name (PascalCase)")
    parent: str | None = Field(default=None, description="Persisted parent type, if any")
    fields: list[str] = Field(default_factory=list, description="Scalar field names")
    field_types: dict[str, str] = Field(
        default_factory=dict, description="Field name -> type (default: string)"
    )
    transient: list[str] = Field(
        default_factory=list, description="Fields kept in memory but never persisted"
    )


class SchemaSpec(BaseModel):
    """A complete schema: types (parents first) and relations."""

    types: list[EntityTypeSpec] = Field(default_factory=list)
    relations: list[RelationSpec] = Field(default_factory=list)


class RelationInfo(BaseModel):
    """Information about a registered relation (output format)."""

    name: str
    kind: str
    owner_type: str
    owner_name: str
    peer_type: str
    peer_name: str
    min_count: int
    max_count: int | None
    meta_columns: list[str] = Field(default_factory=list)
    table_name: str
    column_name: str | None = None


class EntityTypeInfo(BaseModel):
    """Information about a registered entity type (output format)."""

    name: str
    table_name: str
    parent: str | None
    hierarchy: list[str]
    fields: list[str]
    field_types: dict[str, str] = Field(default_factory=dict)
    transient: list[str] = Field(default_factory=list)
    relations: list[RelationInfo] = Field(default_factory=list)


class SchemaInfo(BaseModel):
    """Full schema information (output format)."""

    types: dict[str, EntityTypeInfo]
    total_types: int
    total_relations: int


class SaveResult(BaseModel):
    """Statement counts for one ``save()`` call, nested saves included."""

    inserts: int = 0
    updates: int = 0
    deletes: int = 0
    relation_writes: int = 0
    entities_saved: int = 0

    @property
    def total_writes(self) -> int:
        return self.inserts + self.updates + self.deletes


class EntitySnapshot(BaseModel):
    """A loaded entity rendered for output."""

    type_name: str
    identity: Any
    created_at: datetime | None = None
    altered_at: datetime | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
