"""Registry of entity types and their relations.

The registry is the schema descriptor handed to the reconciliation engine.
It is built explicitly at application start (or from a JSON schema file) and
owns, per type:

- the hierarchy from root ancestor to the type itself
- the scalar fields declared at that level
- the relation definitions declared at that level, indexed by name and by kind
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from tallyorm import naming
from tallyorm.core.types import (
    EntityTypeInfo,
    EntityTypeSpec,
    FieldType,
    RelationInfo,
    RelationKind,
    RelationSpec,
    SchemaInfo,
    SchemaSpec,
)
from tallyorm.exceptions import (
    InvalidConfigurationError,
    UnknownRelationError,
    UnknownTypeError,
)
from tallyorm.relations.group import RelationDefinition


@dataclass(frozen=True)
class EntityType:
    """Descriptor for one persisted type (one table)."""

    name: str
    parent: str | None = None
    fields: tuple[str, ...] = ()
    transient: tuple[str, ...] = field(default_factory=tuple)
    field_types: tuple[tuple[str, FieldType], ...] = ()

    def field_type(self, field_name: str) -> FieldType:
        return dict(self.field_types).get(field_name, FieldType.STRING)

    @property
    def table_name(self) -> str:
        return naming.table_name(self.name)

    @property
    def is_root(self) -> bool:
        return self.parent is None


class SchemaProvider(Protocol):
    """What the reconciliation engine needs to know about the schema."""

    def hierarchy_of(self, type_name: str) -> list[EntityType]: ...

    def scalar_fields_of(self, type_name: str) -> tuple[str, ...]: ...

    def relation_registrations_of(self, type_name: str) -> list[RelationDefinition]: ...


class Registry:
    """Explicit registry of entity types and relation definitions.

    Example:
        registry = Registry()
        registry.register_type("Person", fields=["name"])
        registry.register_type("Author", parent="Person", fields=["pen_name"])
        registry.register_type("Book", fields=["title"])
        registry.register_relation(
            "many_to_many", "Author", "author", "Book", "book", meta_columns=["role"]
        )
    """

    def __init__(self) -> None:
        self._types: dict[str, EntityType] = {}
        self._by_name: dict[tuple[str, str], RelationDefinition] = {}
        self._by_kind: dict[tuple[str, RelationKind], list[RelationDefinition]] = {}

    # === Construction ===

    @classmethod
    def from_spec(cls, spec: SchemaSpec | dict[str, Any]) -> Registry:
        """Build a registry from a schema spec (or its dict form)."""
        if not isinstance(spec, SchemaSpec):
            spec = SchemaSpec.model_validate(spec)

        registry = cls()
        for type_spec in spec.types:
            registry.register_type(
                type_spec.name,
                fields=type_spec.fields,
                parent=type_spec.parent,
                transient=type_spec.transient,
                field_types=type_spec.field_types,
            )
        for rel in spec.relations:
            registry.register_relation(
                rel.kind,
                rel.owner_type,
                rel.owner_name,
                rel.peer_type,
                rel.peer_name,
                min_count=rel.min_count,
                max_count=rel.max_count,
                meta_columns=rel.meta_columns,
            )
        return registry

    def register_type(
        self,
        name: str,
        fields: Iterable[str] = (),
        parent: str | None = None,
        transient: Iterable[str] = (),
        field_types: dict[str, str] | None = None,
    ) -> EntityType:
        """Register a persisted type.

        Args:
            name: Type name (PascalCase, alphanumeric)
            fields: Scalar fields persisted in this level's table
            parent: Already-registered persisted parent type
            transient: Fields kept on instances but never persisted
            field_types: Optional column type per persisted field (default: string)

        Raises:
            InvalidConfigurationError: On invalid or clashing names
        """
        if not naming.valid_type_name(name):
            raise InvalidConfigurationError(
                f"Invalid type name '{name}'. Type names are alphanumeric and start with "
                "an uppercase letter (e.g., 'BlogPost').",
                {"type_name": name},
            )
        if name in self._types:
            raise InvalidConfigurationError(
                f"Type '{name}' is already registered.", {"type_name": name}
            )
        if parent is not None and parent not in self._types:
            raise UnknownTypeError(parent, self.list_types())

        fields = tuple(fields)
        transient = tuple(transient)
        inherited = set()
        if parent is not None:
            for ancestor in self.hierarchy_of(parent):
                inherited.update(ancestor.fields)
                inherited.update(ancestor.transient)

        seen: set[str] = set()
        for field_name in (*fields, *transient):
            if not naming.valid_role_name(field_name):
                raise InvalidConfigurationError(
                    f"Invalid field name '{field_name}' on '{name}'. Field names use lowercase "
                    "letters, digits and single underscores, and start with a letter.",
                    {"type_name": name, "field_name": field_name},
                )
            if field_name in naming.RESERVED_NAMES:
                raise InvalidConfigurationError(
                    f"Field name '{field_name}' on '{name}' is reserved. "
                    f"Reserved names: {', '.join(sorted(naming.RESERVED_NAMES))}",
                    {"type_name": name, "field_name": field_name},
                )
            if field_name in seen or field_name in inherited:
                raise InvalidConfigurationError(
                    f"Field '{field_name}' is declared more than once in the hierarchy of "
                    f"'{name}'. Overriding inherited fields is not supported.",
                    {"type_name": name, "field_name": field_name},
                )
            seen.add(field_name)

        types = dict(field_types or {})
        for field_name, type_name in types.items():
            if field_name not in fields:
                raise InvalidConfigurationError(
                    f"Type given for undeclared field '{field_name}' on '{name}'.",
                    {"type_name": name, "field_name": field_name},
                )
            if type_name not in FieldType.values():
                raise InvalidConfigurationError(
                    f"Invalid field type '{type_name}' for '{name}.{field_name}'. "
                    f"Valid types: {', '.join(FieldType.values())}",
                    {"type_name": name, "field_name": field_name, "field_type": type_name},
                )

        entity_type = EntityType(
            name=name,
            parent=parent,
            fields=fields,
            transient=transient,
            field_types=tuple((f, FieldType(t)) for f, t in types.items()),
        )
        self._types[name] = entity_type
        return entity_type

    def register_relation(
        self,
        kind: str | RelationKind,
        owner_type: str,
        owner_name: str,
        peer_type: str,
        peer_name: str,
        min_count: int = 0,
        max_count: int | None = None,
        meta_columns: Sequence[str] = (),
    ) -> RelationDefinition:
        """Register a relation declared on ``owner_type`` and named ``peer_name``.

        Raises:
            InvalidConfigurationError: On bad parameters, unknown types or a
                name that is already taken in the owner's hierarchy
        """
        definition = RelationDefinition(
            kind=kind,  # type: ignore[arg-type]
            owner_type=owner_type,
            owner_name=owner_name,
            peer_type=peer_type,
            peer_name=peer_name,
            min_count=min_count,
            max_count=max_count,
            meta_columns=tuple(meta_columns),
        )
        for type_name in (owner_type, peer_type):
            if type_name not in self._types:
                raise UnknownTypeError(type_name, self.list_types())

        for level in self.hierarchy_of(owner_type):
            if (level.name, peer_name) in self._by_name:
                raise InvalidConfigurationError(
                    f"Relation '{peer_name}' is already registered on '{level.name}'.",
                    {"type_name": owner_type, "relation_name": peer_name},
                )
            if peer_name in level.fields or peer_name in level.transient:
                raise InvalidConfigurationError(
                    f"Relation '{peer_name}' clashes with a field of '{level.name}'.",
                    {"type_name": owner_type, "relation_name": peer_name},
                )

        self._by_name[definition.key] = definition
        self._by_kind.setdefault((owner_type, definition.kind), []).append(definition)
        return definition

    # === Schema contract ===

    def get_type(self, name: str) -> EntityType:
        try:
            return self._types[name]
        except KeyError:
            raise UnknownTypeError(name, self.list_types()) from None

    def has_type(self, name: str) -> bool:
        return name in self._types

    def list_types(self) -> list[str]:
        return list(self._types)

    def hierarchy_of(self, type_name: str) -> list[EntityType]:
        """Types from the root ancestor down to ``type_name``."""
        chain = []
        current: str | None = type_name
        while current is not None:
            entity_type = self.get_type(current)
            chain.append(entity_type)
            current = entity_type.parent
        chain.reverse()
        return chain

    def root_of(self, type_name: str) -> EntityType:
        return self.hierarchy_of(type_name)[0]

    def is_subtype(self, type_name: str, ancestor: str) -> bool:
        return any(level.name == ancestor for level in self.hierarchy_of(type_name))

    def scalar_fields_of(self, type_name: str) -> tuple[str, ...]:
        """Persisted fields declared at ``type_name``'s own level."""
        return self.get_type(type_name).fields

    def all_fields_of(self, type_name: str) -> list[str]:
        """Every persisted and transient field across the hierarchy."""
        names: list[str] = []
        for level in self.hierarchy_of(type_name):
            names.extend(level.fields)
            names.extend(level.transient)
        return names

    def level_of_field(self, type_name: str, field_name: str) -> EntityType | None:
        """Hierarchy level whose table stores persisted field ``field_name``."""
        for level in self.hierarchy_of(type_name):
            if field_name in level.fields:
                return level
        return None

    def relation_registrations_of(self, type_name: str) -> list[RelationDefinition]:
        """Relations declared at ``type_name``'s own level, in registration order."""
        self.get_type(type_name)
        return [d for (owner, _), d in self._by_name.items() if owner == type_name]

    def relations_by_kind(self, type_name: str, kind: RelationKind) -> list[RelationDefinition]:
        return list(self._by_kind.get((type_name, RelationKind(kind)), []))

    def relation(self, type_name: str, name: str) -> RelationDefinition:
        """Find relation ``name`` declared on ``type_name`` or one of its ancestors.

        Raises:
            UnknownRelationError: If no level of the hierarchy declares it
        """
        hierarchy = self.hierarchy_of(type_name)
        for level in reversed(hierarchy):
            definition = self._by_name.get((level.name, name))
            if definition is not None:
                return definition
        available = [
            d.name for level in hierarchy for d in self.relation_registrations_of(level.name)
        ]
        raise UnknownRelationError(name, type_name, available)

    def relations_referencing(self, type_name: str) -> list[RelationDefinition]:
        """Relations whose key column lives on ``type_name``'s table."""
        result = []
        for definition in self._by_name.values():
            if definition.kind == RelationKind.MANY_TO_ONE and definition.owner_type == type_name:
                result.append(definition)
            elif definition.kind == RelationKind.ONE_TO_MANY and definition.peer_type == type_name:
                result.append(definition)
        return result

    def many_to_many_relations(self) -> list[RelationDefinition]:
        return [d for d in self._by_name.values() if d.kind == RelationKind.MANY_TO_MANY]

    # === Introspection ===

    def describe_type(self, type_name: str) -> EntityTypeInfo:
        entity_type = self.get_type(type_name)
        return EntityTypeInfo(
            name=entity_type.name,
            table_name=entity_type.table_name,
            parent=entity_type.parent,
            hierarchy=[level.name for level in self.hierarchy_of(type_name)],
            fields=list(entity_type.fields),
            field_types={f: t.value for f, t in entity_type.field_types},
            transient=list(entity_type.transient),
            relations=[_relation_info(d) for d in self.relation_registrations_of(type_name)],
        )

    def describe(self) -> SchemaInfo:
        types = {name: self.describe_type(name) for name in self._types}
        return SchemaInfo(
            types=types,
            total_types=len(types),
            total_relations=len(self._by_name),
        )

    def to_spec(self) -> SchemaSpec:
        """Inverse of ``from_spec``."""
        return SchemaSpec(
            types=[
                EntityTypeSpec(
                    name=t.name,
                    parent=t.parent,
                    fields=list(t.fields),
                    field_types={f: ft.value for f, ft in t.field_types},
                    transient=list(t.transient),
                )
                for t in self._types.values()
            ],
            relations=[
                RelationSpec(
                    kind=d.kind.value,
                    owner_type=d.owner_type,
                    owner_name=d.owner_name,
                    peer_type=d.peer_type,
                    peer_name=d.peer_name,
                    min_count=d.min_count,
                    max_count=d.max_count,
                    meta_columns=list(d.meta_columns),
                )
                for d in self._by_name.values()
            ],
        )


def _relation_info(definition: RelationDefinition) -> RelationInfo:
    return RelationInfo(
        name=definition.name,
        kind=definition.kind.value,
        owner_type=definition.owner_type,
        owner_name=definition.owner_name,
        peer_type=definition.peer_type,
        peer_name=definition.peer_name,
        min_count=definition.min_count,
        max_count=definition.max_count,
        meta_columns=list(definition.meta_columns),
        table_name=definition.table_name,
        column_name=definition.column_name,
    )


def load_schema_file(path: str | Path) -> Registry:
    """Read a JSON schema file and build a registry from it.

    Raises:
        InvalidConfigurationError: If the file is missing or not valid JSON
    """
    file_path = Path(path)
    if not file_path.exists():
        raise InvalidConfigurationError(f"Schema file not found: {path}", {"path": str(path)})
    try:
        data = json.loads(file_path.read_text())
    except json.JSONDecodeError as e:
        raise InvalidConfigurationError(
            f"Invalid JSON in schema file {path}: {e}", {"path": str(path)}
        ) from e
    return Registry.from_spec(data)
