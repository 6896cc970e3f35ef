"""Shared test fixtures for TallyORM."""

import os
from collections.abc import Generator

import pytest

from tallyorm import ReconciliationEngine, Registry, TallyDB
from tallyorm.storage import RecordingStore, SQLAlchemyStore, create_tables


def _psycopg_available() -> bool:
    """Check if psycopg is installed."""
    try:
        import psycopg  # noqa: F401

        return True
    except ImportError:
        return False


def _postgresql_connectable(url: str) -> bool:
    """Check if we can connect to PostgreSQL."""
    if not _psycopg_available():
        return False
    try:
        store = SQLAlchemyStore(url)
        result = store.test_connection()
        store.close()
        return result
    except Exception:
        return False


def build_library_registry() -> Registry:
    """A small library schema touching every relation kind.

    - Author extends Person (two-level hierarchy)
    - Book -> Publisher many-to-one, mirrored by Publisher -> books one-to-many
    - Shelf -> books one-to-many, at most 2
    - Book <-> Author many-to-many with a ``role`` metadata column
    - Book <-> Tag many-to-many
    - Person fans of Person idols (self-referencing many-to-many)
    """
    registry = Registry()
    registry.register_type("Person", fields=["name"])
    registry.register_type("Author", parent="Person", fields=["pen_name"])
    registry.register_type("Publisher", fields=["name"])
    registry.register_type(
        "Book", fields=["title", "year"], transient=["notes"], field_types={"year": "int"}
    )
    registry.register_type("Shelf", fields=["label"])
    registry.register_type("Tag", fields=["label"])

    registry.register_relation("many_to_one", "Book", "book", "Publisher", "publisher")
    registry.register_relation("one_to_many", "Publisher", "publisher", "Book", "books")
    registry.register_relation("one_to_many", "Shelf", "shelf", "Book", "books", max_count=2)
    registry.register_relation(
        "many_to_many", "Book", "book", "Author", "authors", meta_columns=["role"]
    )
    registry.register_relation("many_to_many", "Book", "book", "Tag", "tags")
    registry.register_relation("many_to_many", "Person", "fan", "Person", "idol")
    return registry


@pytest.fixture
def registry() -> Registry:
    """The library schema."""
    return build_library_registry()


@pytest.fixture
def memory_store(registry: Registry) -> Generator[SQLAlchemyStore, None, None]:
    """SQLite in-memory store with the library tables created."""
    store = SQLAlchemyStore("sqlite:///:memory:")
    create_tables(store.connection, registry)
    yield store
    store.close()


@pytest.fixture
def recording_store(memory_store: SQLAlchemyStore) -> RecordingStore:
    return RecordingStore(memory_store)


@pytest.fixture
def engine(registry: Registry, recording_store: RecordingStore) -> ReconciliationEngine:
    """Engine writing through a recording store."""
    return ReconciliationEngine(registry, recording_store)


@pytest.fixture
def memory_db(registry: Registry) -> Generator[TallyDB, None, None]:
    """Create a TallyDB instance with SQLite in-memory and the library tables."""
    database = TallyDB("sqlite:///:memory:", registry)
    database.create_tables()
    yield database
    database.close()


@pytest.fixture
def postgresql_url() -> str:
    """Get PostgreSQL URL from environment or use default.

    Tests using this fixture carry the ``integration`` marker.
    """
    url = os.environ.get("TEST_DATABASE_URL")
    if not url:
        # Default to local PostgreSQL
        url = "postgresql://localhost/tallyorm_test"

    # Skip if psycopg not available
    if not _psycopg_available():
        pytest.skip("psycopg not installed")

    # Skip if can't connect (no PostgreSQL server)
    if not _postgresql_connectable(url):
        pytest.skip(f"Cannot connect to PostgreSQL at {url}")

    return url


@pytest.fixture
def pg_db(postgresql_url: str, registry: Registry) -> Generator[TallyDB, None, None]:
    """Create a TallyDB instance with PostgreSQL and the library tables.

    The postgresql_url fixture handles skipping when PostgreSQL isn't available.
    """
    database = TallyDB(postgresql_url, registry)
    database.create_tables()
    yield database
    # Cleanup - drop the library tables
    from tallyorm.storage import build_metadata

    build_metadata(registry).drop_all(database.store.connection)
    database.store.connection.commit()
    database.close()
