"""Main TallyDB facade."""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from tallyorm.core.entity import DEFAULT_SOURCE, Entity
from tallyorm.core.types import EntityTypeInfo, SaveResult, SchemaSpec
from tallyorm.engine.reconciler import DEFAULT_MAX_DEPTH, ReconciliationEngine
from tallyorm.schema.registry import Registry, load_schema_file
from tallyorm.storage import ddl
from tallyorm.storage.sqlalchemy_store import SQLAlchemyStore


class TallyDB:
    """Main TallyDB class: one registry, one store and the engine between them.

    Example:
        db = TallyDB("sqlite:///library.db", "schema.json")
        db.create_tables()

        author = db.new("Author", name="Frank Herbert")
        book = db.new("Book", title="Dune")
        book.add("authors", author)
        db.save(book)

        again = db.load("Book", book.identity)
        print([a["name"] for a in again.related("authors")])
    """

    def __init__(
        self,
        url: str,
        registry: Registry | SchemaSpec | dict[str, Any] | str | Path | None = None,
        echo: bool = False,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        """Initialize TallyDB.

        Args:
            url: Database connection URL
            registry: A Registry, a schema spec (model or dict) or the path of
                      a JSON schema file. Defaults to an empty registry.
            echo: Whether to echo SQL statements (for debugging)
            max_depth: Maximum nesting of peer saves triggered by one save
        """
        if registry is None:
            registry = Registry()
        elif isinstance(registry, str | Path):
            registry = load_schema_file(registry)
        elif not isinstance(registry, Registry):
            registry = Registry.from_spec(registry)

        self.registry: Registry = registry
        self.store = SQLAlchemyStore(url, echo=echo)
        self.engine = ReconciliationEngine(registry, self.store, max_depth=max_depth)

    def close(self) -> None:
        """Close the database connection."""
        self.store.close()

    def __enter__(self) -> TallyDB:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()

    # === Schema ===

    def describe(self) -> dict[str, Any]:
        """Get the full schema as a JSON-serializable dict."""
        return self.registry.describe().model_dump()

    def describe_type(self, type_name: str) -> EntityTypeInfo:
        """Get information about one entity type.

        Raises:
            UnknownTypeError: If the type isn't registered (lists registered types)
        """
        return self.registry.describe_type(type_name)

    def create_tables(self) -> list[str]:
        """Create the tables the registry describes (existing ones are kept)."""
        return ddl.create_tables(self.store.connection, self.registry)

    def render_ddl(self) -> str:
        """CREATE TABLE statements for this database's dialect."""
        return ddl.render_ddl(self.registry, self.store.dialect)

    # === Entities ===

    def new(self, type_name: str, source: str = DEFAULT_SOURCE, **values: Any) -> Entity:
        return self.engine.new(type_name, source=source, **values)

    def save(self, entity: Entity, atomic: bool = False) -> SaveResult:
        """Persist ``entity``.

        Args:
            entity: Entity to save
            atomic: Run every statement of the save in one transaction; on
                    failure the entities keep their pre-save state
        """
        if atomic:
            with self.transaction():
                return self.engine.save(entity)
        return self.engine.save(entity)

    def load(self, type_name: str, identity: Any) -> Entity:
        return self.engine.load(type_name, identity)

    def find(self, type_name: str, order_by: str | None = None, **equals: Any) -> list[Entity]:
        return self.engine.find(type_name, order_by=order_by, **equals)

    def delete(self, entity: Entity) -> int:
        return self.engine.delete(entity)

    @contextmanager
    def transaction(self) -> Generator[TallyDB, None, None]:
        """Run the enclosed statements in one transaction.

        If the block raises, its rows are rolled back and every entity saved or
        deleted inside it gets back its keys, timestamps and relation state.
        Inside an enclosing store transaction the block joins that one.
        """
        if self.store.in_transaction:
            yield self
            return
        with self.engine.undo_on_error(), self.store.transaction():
            yield self
