"""Schema description for TallyORM."""

from tallyorm.schema.registry import EntityType, Registry, SchemaProvider, load_schema_file

__all__ = [
    "EntityType",
    "Registry",
    "SchemaProvider",
    "load_schema_file",
]
