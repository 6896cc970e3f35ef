"""In-memory entity instances.

An Entity carries its scalar values, per-level row keys and timestamps, and
one RelationGroup per relation declared anywhere in its type hierarchy. The
groups are indexed twice, by ``(declaring type, relation name)`` and by
``(declaring type, relation kind)``; both indexes hold the same objects.

Relation mutations only touch in-memory state. A persisted entity bound to an
engine reads a relation from storage the first time it is accessed (queried
or mutated); ``save()`` turns the pending state into writes.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from tallyorm.core.types import EntitySnapshot, RelationKind, SaveResult
from tallyorm.exceptions import (
    ConstraintViolationError,
    InvalidArgumentError,
    UnknownFieldError,
)
from tallyorm.relations.group import GroupCheckpoint, RelationGroup

if TYPE_CHECKING:
    from tallyorm.engine.reconciler import ReconciliationEngine
    from tallyorm.schema.registry import Registry

DEFAULT_SOURCE = "default"


@dataclass(frozen=True)
class EntityCheckpoint:
    """Persistence state of an entity, taken before a save or delete."""

    keys: dict[str, Any]
    foreign_keys: dict[tuple[str, str], Any]
    created_at: datetime | None
    altered_at: datetime | None
    deleted: bool
    groups: dict[tuple[str, str], GroupCheckpoint]


class Entity:
    """An instance of a registered entity type.

    Example:
        book = Entity("Book", registry, {"title": "Dune"})
        book.add("authors", frank)
        engine.save(book)
        book.identity  # root-level row id
    """

    def __init__(
        self,
        type_name: str,
        registry: Registry,
        values: Mapping[str, Any] | None = None,
        source: str = DEFAULT_SOURCE,
        engine: ReconciliationEngine | None = None,
        lazy: bool = False,
    ) -> None:
        """Create an entity.

        Args:
            type_name: Registered type name
            registry: Registry describing the type
            values: Initial field values
            source: Name of the data source the entity is bound to
            engine: Engine used for lazy relation reads
            lazy: Leave relation groups unloaded (entities read from storage).
                  New entities start with every group loaded and empty.
        """
        self.type_name = type_name
        self.registry = registry
        self.source = source
        self.created_at: datetime | None = None
        self.altered_at: datetime | None = None
        self._hierarchy = registry.hierarchy_of(type_name)
        self._fields = registry.all_fields_of(type_name)
        self._values: dict[str, Any] = {}
        self._keys: dict[str, Any] = {}
        self._foreign_keys: dict[tuple[str, str], Any] = {}
        self._engine = engine
        self._deleted = False

        self._groups: dict[tuple[str, str], RelationGroup] = {}
        self._groups_by_kind: dict[tuple[str, RelationKind], list[RelationGroup]] = {}
        for level in self._hierarchy:
            for definition in registry.relation_registrations_of(level.name):
                group = RelationGroup(definition)
                if not lazy:
                    group.mark_loaded()
                self._groups[definition.key] = group
                self._groups_by_kind.setdefault((level.name, definition.kind), []).append(group)

        for name, value in (values or {}).items():
            self[name] = value

    def __repr__(self) -> str:
        return f"<{self.type_name} identity={self.identity!r}>"

    # === Identity ===

    @property
    def identity(self) -> Any:
        """Root-level row id; None until the entity is first saved."""
        return self._keys.get(self._hierarchy[0].name)

    @property
    def is_persisted(self) -> bool:
        return all(level.name in self._keys for level in self._hierarchy)

    @property
    def is_deleted(self) -> bool:
        return self._deleted

    def key_for(self, type_name: str) -> Any:
        """Row id of this entity in ``type_name``'s table (None if not inserted yet)."""
        return self._keys.get(type_name)

    def _assign_key(self, type_name: str, key: Any) -> None:
        current = self._keys.get(type_name)
        if current is not None and current != key:
            raise InvalidArgumentError(
                f"Identity of {self!r} at level '{type_name}' is already {current!r}.",
                {"type_name": type_name, "current": current, "new": key},
            )
        self._keys[type_name] = key

    def _checkpoint(self) -> EntityCheckpoint:
        return EntityCheckpoint(
            keys=dict(self._keys),
            foreign_keys=dict(self._foreign_keys),
            created_at=self.created_at,
            altered_at=self.altered_at,
            deleted=self._deleted,
            groups={key: group.checkpoint() for key, group in self._groups.items()},
        )

    def _restore(self, checkpoint: EntityCheckpoint) -> None:
        """Put keys, timestamps and relation state back; field values are kept."""
        self._keys = dict(checkpoint.keys)
        self._foreign_keys = dict(checkpoint.foreign_keys)
        self.created_at = checkpoint.created_at
        self.altered_at = checkpoint.altered_at
        self._deleted = checkpoint.deleted
        for key, group_checkpoint in checkpoint.groups.items():
            self._groups[key].restore(group_checkpoint)

    # === Fields ===

    @property
    def fields(self) -> dict[str, Any]:
        return dict(self._values)

    def _check_field(self, name: str) -> None:
        if name not in self._fields:
            raise UnknownFieldError(name, self.type_name, self._fields)

    def __getitem__(self, name: str) -> Any:
        self._check_field(name)
        return self._values.get(name)

    def __setitem__(self, name: str, value: Any) -> None:
        self._check_field(name)
        self._values[name] = value

    def get(self, name: str, default: Any = None) -> Any:
        self._check_field(name)
        return self._values.get(name, default)

    def update(self, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            self[name] = value

    def to_snapshot(self) -> EntitySnapshot:
        return EntitySnapshot(
            type_name=self.type_name,
            identity=self.identity,
            created_at=self.created_at,
            altered_at=self.altered_at,
            fields=self.fields,
        )

    # === Relation groups ===

    def group(self, relation: str) -> RelationGroup:
        """The group for ``relation``, without triggering a lazy read.

        Raises:
            UnknownRelationError: If no level of the hierarchy declares it
        """
        definition = self.registry.relation(self.type_name, relation)
        return self._groups[definition.key]

    def groups(self) -> list[RelationGroup]:
        return list(self._groups.values())

    def groups_declared_by(
        self, type_name: str, kind: RelationKind | str | None = None
    ) -> list[RelationGroup]:
        """Groups declared at one hierarchy level, optionally of one kind."""
        if kind is not None:
            return list(self._groups_by_kind.get((type_name, RelationKind(kind)), []))
        return [g for (owner, _), g in self._groups.items() if owner == type_name]

    def loaded_group(self, relation: str) -> RelationGroup:
        """The group for ``relation``, read from storage first if needed."""
        group = self.group(relation)
        if not group.is_loaded and self._engine is not None and self.identity is not None:
            self._engine.load_relation(self, relation)
        return group

    # === Relation operations ===

    def add(
        self,
        relation: str,
        peer: Entity,
        count: int = 1,
        meta: Mapping[str, Any] | None = None,
        check: bool = False,
    ) -> int:
        """Relate ``peer`` through ``relation`` ``count`` more times.

        Returns the peer's total count afterwards. With ``check`` set, a group
        total above ``max_count`` raises right away instead of at save time.

        Raises:
            UnknownRelationError: If ``relation`` is not declared for the type
            InvalidArgumentError: If ``peer`` has the wrong type or meta is unknown
            ConstraintViolationError: If ``check`` is set and ``max_count`` is exceeded
        """
        group = self.loaded_group(relation)
        self._check_peer(group, peer)
        total = group.add(peer, count, meta)
        if check and group.max_count is not None:
            group_total = group.total()
            if group_total > group.max_count:
                group.remove(peer, count)
                raise ConstraintViolationError(
                    f"Relation '{relation}' on '{self.type_name}' allows at most "
                    f"{group.max_count} related rows; adding would make {group_total}.",
                    type_name=self.type_name,
                    relation_name=relation,
                    count=group_total,
                )
        return total

    def remove(self, relation: str, peer: Entity, count: int = 1) -> int:
        """Unrelate ``peer`` up to ``count`` times; returns how many were removed."""
        group = self.loaded_group(relation)
        return group.remove(peer, count)

    def clear(self, relation: str) -> int:
        """Unrelate every peer; returns how many relation rows were removed."""
        group = self.loaded_group(relation)
        removed = 0
        for peer, count, _ in group.snapshot().entries():
            removed += group.remove(peer, count)
        return removed

    def related(self, relation: str) -> list[Entity]:
        """Peers currently related through ``relation`` (each listed once)."""
        return self.loaded_group(relation).snapshot().peers()

    def peer(self, relation: str) -> Entity | None:
        """The single peer of a many-to-one relation."""
        group = self.loaded_group(relation)
        if group.kind != RelationKind.MANY_TO_ONE:
            raise InvalidArgumentError(
                f"'{relation}' is a {group.kind} relation; use related() instead.",
                {"relation_name": relation, "kind": group.kind.value},
            )
        return group.single()

    def count(self, relation: str, peer: Entity | None = None) -> int:
        """Related row count, duplicates included; for one peer if given."""
        snapshot = self.loaded_group(relation).snapshot()
        if peer is None:
            return snapshot.total()
        return snapshot.get(peer)

    def meta(self, relation: str, peer: Entity) -> dict[str, Any]:
        """Junction metadata for ``peer`` (many-to-many relations)."""
        return self.loaded_group(relation).snapshot().meta(peer)

    def save(self) -> SaveResult:
        """Save through the engine this entity is bound to."""
        if self._engine is None:
            raise InvalidArgumentError(
                f"{self!r} is not bound to an engine. Save it with engine.save(entity)."
            )
        return self._engine.save(self)

    def _check_peer(self, group: RelationGroup, peer: Any) -> None:
        peer_type = group.definition.peer_type
        if not isinstance(peer, Entity) or not self.registry.is_subtype(peer.type_name, peer_type):
            got = peer.type_name if isinstance(peer, Entity) else type(peer).__name__
            raise InvalidArgumentError(
                f"Relation '{group.name}' on '{self.type_name}' relates '{peer_type}' "
                f"entities, got '{got}'.",
                {"relation_name": group.name, "peer_type": peer_type, "got": got},
            )
