"""Custom exceptions for TallyORM.

Every exception carries an actionable message plus a context dict:
- Configuration errors (bad registrations, unknown relations, bad arguments)
  are programmer errors and are not meant to be caught in normal control flow
- ConstraintViolationError and NotFoundError are expected, recoverable outcomes
- StorageError wraps whatever the store raised, keeping it as ``__cause__``
"""

from __future__ import annotations

from typing import Any


class TallyORMError(Exception):
    """Base exception for all TallyORM errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Return error as JSON-serializable dict."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class InvalidConfigurationError(TallyORMError):
    """A type or relation registration was rejected."""

    pass


class UnknownRelationError(TallyORMError):
    """Relation name is not registered for the entity type."""

    def __init__(
        self, relation_name: str, type_name: str, available_relations: list[str] | None = None
    ) -> None:
        available = available_relations or []
        if available:
            message = (
                f"Relation '{relation_name}' is not registered for '{type_name}'. "
                f"Available relations: {', '.join(available)}"
            )
        else:
            message = (
                f"Relation '{relation_name}' is not registered for '{type_name}'. "
                "No relations are registered for this type."
            )
        super().__init__(
            message,
            {
                "relation_name": relation_name,
                "type_name": type_name,
                "available_relations": available,
            },
        )
        self.relation_name = relation_name
        self.type_name = type_name
        self.available_relations = available


class UnknownTypeError(InvalidConfigurationError):
    """Entity type has not been registered."""

    def __init__(self, type_name: str, available_types: list[str] | None = None) -> None:
        available = available_types or []
        if available:
            message = (
                f"Type '{type_name}' is not registered. "
                f"Registered types: {', '.join(available)}"
            )
        else:
            message = f"Type '{type_name}' is not registered. No types are registered yet."
        super().__init__(message, {"type_name": type_name, "available_types": available})
        self.type_name = type_name
        self.available_types = available


class ConstraintViolationError(TallyORMError):
    """A relation cardinality bound was broken, or a save cycle could not be resolved."""

    def __init__(
        self,
        message: str,
        type_name: str | None = None,
        relation_name: str | None = None,
        count: int | None = None,
    ) -> None:
        super().__init__(
            message,
            {"type_name": type_name, "relation_name": relation_name, "count": count},
        )
        self.type_name = type_name
        self.relation_name = relation_name
        self.count = count


class NotFoundError(TallyORMError):
    """No row exists for the requested identity."""

    def __init__(self, type_name: str, identity: Any) -> None:
        message = f"No '{type_name}' row found with identity {identity!r}."
        super().__init__(message, {"type_name": type_name, "identity": identity})
        self.type_name = type_name
        self.identity = identity


class InvalidArgumentError(TallyORMError):
    """An operation was called with an argument it cannot accept."""

    pass


class UnknownFieldError(InvalidArgumentError):
    """Field is not declared anywhere in the entity type's hierarchy."""

    def __init__(self, field_name: str, type_name: str, available_fields: list[str]) -> None:
        if available_fields:
            message = (
                f"Field '{field_name}' is not declared on '{type_name}'. "
                f"Available fields: {', '.join(available_fields)}"
            )
        else:
            message = f"Field '{field_name}' is not declared on '{type_name}'. No fields declared."
        super().__init__(
            message,
            {
                "field_name": field_name,
                "type_name": type_name,
                "available_fields": available_fields,
            },
        )
        self.field_name = field_name
        self.type_name = type_name
        self.available_fields = available_fields


class StorageError(TallyORMError):
    """The underlying store failed to execute a statement."""

    def __init__(self, message: str, sql: str | None = None) -> None:
        super().__init__(message, {"sql": sql})
        self.sql = sql
