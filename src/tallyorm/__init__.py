"""TallyORM - relationship-reconciling object mapper.

Maps in-memory entities connected by one-to-many, many-to-one and
many-to-many relations onto plain relational tables, and turns in-memory
relation changes into the minimal set of writes.

Example:
    from tallyorm import Registry, TallyDB

    registry = Registry()
    registry.register_type("Author", fields=["name"])
    registry.register_type("Book", fields=["title"])
    registry.register_relation("many_to_many", "Book", "book", "Author", "authors")

    with TallyDB("sqlite:///library.db", registry) as db:
        db.create_tables()

        book = db.new("Book", title="Dune")
        book.add("authors", db.new("Author", name="Frank Herbert"))
        db.save(book)      # inserts both rows and one junction row
        db.save(book)      # no relation writes: nothing changed

        loaded = db.load("Book", book.identity)
        loaded.related("authors")  # read lazily, on first access
"""

from tallyorm.core.database import TallyDB
from tallyorm.core.entity import Entity
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
from tallyorm.engine import QueryBuilder, ReconciliationEngine, plan_junction_writes
from tallyorm.exceptions import (
    ConstraintViolationError,
    InvalidArgumentError,
    InvalidConfigurationError,
    NotFoundError,
    StorageError,
    TallyORMError,
    UnknownFieldError,
    UnknownRelationError,
    UnknownTypeError,
)
from tallyorm.relations import RelationDefinition, RelationGroup, RelationMultiset
from tallyorm.schema import EntityType, Registry, SchemaProvider, load_schema_file
from tallyorm.storage import SQLAlchemyStore, Store

__version__ = "0.1.0"

__all__ = [
    # Main classes
    "TallyDB",
    "Entity",
    "Registry",
    "ReconciliationEngine",
    # Relation bookkeeping
    "RelationMultiset",
    "RelationDefinition",
    "RelationGroup",
    # Schema
    "EntityType",
    "SchemaProvider",
    "load_schema_file",
    # Storage
    "Store",
    "SQLAlchemyStore",
    "QueryBuilder",
    "plan_junction_writes",
    # Types
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
    # Exceptions
    "TallyORMError",
    "InvalidConfigurationError",
    "UnknownTypeError",
    "UnknownRelationError",
    "UnknownFieldError",
    "InvalidArgumentError",
    "ConstraintViolationError",
    "NotFoundError",
    "StorageError",
]
