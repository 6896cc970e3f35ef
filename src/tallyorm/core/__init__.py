"""Core components for TallyORM."""

from tallyorm.core.types import (
    EntitySnapshot,
    EntityTypeInfo,
    EntityTypeSpec,
    FieldType,
    LoadState,
    RelationInfo,
    RelationKind,
    RelationSpec,
    SaveResult,
    SchemaInfo,
    SchemaSpec,
)

__all__ = [
    "RelationKind",
    "FieldType",
    "LoadState",
    "RelationSpec",
    "EntityTypeSpec",
    "SchemaSpec",
    "RelationInfo",
    "EntityTypeInfo",
    "SchemaInfo",
    "SaveResult",
    "EntitySnapshot",
]
