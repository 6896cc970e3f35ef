"""CLI context management for database connections and shared state."""

import os
from dataclasses import dataclass, field

from tallyorm import TallyDB
from tallyorm.exceptions import InvalidConfigurationError
from tallyorm.schema import Registry, load_schema_file

DEFAULT_DATABASE_URL = "sqlite:///./tallyorm.db"


def get_database_url(url: str | None) -> str:
    """Resolve database URL from CLI arg, environment variable, or default.

    Priority:
    1. Explicit URL argument
    2. TALLYORM_URL environment variable
    3. Default: sqlite:///./tallyorm.db
    """
    if url:
        return url
    if env_url := os.getenv("TALLYORM_URL"):
        return env_url
    return DEFAULT_DATABASE_URL


def get_schema_path(path: str | None) -> str | None:
    """Resolve schema file path from CLI arg or TALLYORM_SCHEMA."""
    if path:
        return path
    return os.getenv("TALLYORM_SCHEMA") or None


@dataclass
class CLIContext:
    """Shared context for CLI commands.

    Manages the schema, the database connection lifecycle and output preferences.
    """

    database_url: str
    schema_path: str | None
    echo: bool
    json_output: bool
    _registry: Registry | None = field(default=None, init=False, repr=False)
    _db: TallyDB | None = field(default=None, init=False, repr=False)

    def get_registry(self) -> Registry:
        """Load the schema file (once).

        Raises:
            InvalidConfigurationError: If no schema file was given or it is invalid
        """
        if self._registry is None:
            if self.schema_path is None:
                raise InvalidConfigurationError(
                    "No schema file given. Pass --schema/-s or set TALLYORM_SCHEMA."
                )
            self._registry = load_schema_file(self.schema_path)
        return self._registry

    def get_db(self) -> TallyDB:
        """Get or create database connection (lazy initialization).

        Returns:
            TallyDB instance
        """
        if self._db is None:
            self._db = TallyDB(self.database_url, self.get_registry(), echo=self.echo)
        return self._db

    def close(self) -> None:
        """Close database connection if open."""
        if self._db is not None:
            self._db.close()
            self._db = None
