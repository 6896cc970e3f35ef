"""Relation definitions and per-entity relation group state.

A RelationDefinition is created once, when a type registers its relations,
and is shared by every instance of that type. A RelationGroup pairs a
definition with one entity's bookkeeping:

- ``loaded``: peers known to be persisted
- ``added``: peers added since the last commit
- ``deleted``: persisted peers removed since the last commit

Reconciliation turns ``loaded``/``added``/``deleted`` into store writes and
then calls ``commit()``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from tallyorm import naming
from tallyorm.core.types import LoadState, RelationKind
from tallyorm.exceptions import InvalidArgumentError, InvalidConfigurationError
from tallyorm.relations.multiset import RelationMultiset


@dataclass(frozen=True)
class RelationDefinition:
    """Validated, immutable description of one relation of an entity type.

    The relation is addressed on the owner by its ``peer_name``.
    """

    kind: RelationKind
    owner_type: str
    owner_name: str
    peer_type: str
    peer_name: str
    min_count: int = 0
    max_count: int | None = None
    meta_columns: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        kind = self.kind
        if kind not in RelationKind.values():
            raise InvalidConfigurationError(
                f"Invalid relation kind '{kind}'. Valid kinds: {', '.join(RelationKind.values())}",
                {"kind": str(kind), "valid_kinds": RelationKind.values()},
            )
        object.__setattr__(self, "kind", RelationKind(kind))

        for label, value in (("owner_type", self.owner_type), ("peer_type", self.peer_type)):
            if not naming.valid_type_name(value):
                raise InvalidConfigurationError(
                    f"Invalid {label} '{value}'. Type names are alphanumeric and start "
                    "with an uppercase letter (e.g., 'BlogPost').",
                    {label: value},
                )
        for label, value in (("owner_name", self.owner_name), ("peer_name", self.peer_name)):
            if not naming.valid_role_name(value):
                raise InvalidConfigurationError(
                    f"Invalid {label} '{value}'. Role names use lowercase letters, digits "
                    "and single underscores, and start with a letter (e.g., 'author').",
                    {label: value},
                )
            if value in naming.RESERVED_NAMES:
                raise InvalidConfigurationError(
                    f"Role name '{value}' is reserved. "
                    f"Reserved names: {', '.join(sorted(naming.RESERVED_NAMES))}",
                    {label: value},
                )

        if not isinstance(self.min_count, int) or self.min_count < 0:
            raise InvalidConfigurationError(
                f"min_count must be an integer >= 0, got {self.min_count!r}.",
                {"min_count": self.min_count},
            )

        max_count = self.max_count
        if kind == RelationKind.MANY_TO_ONE:
            if max_count is None:
                max_count = 1
                object.__setattr__(self, "max_count", 1)
            if self.min_count > 1 or max_count > 1:
                raise InvalidConfigurationError(
                    f"Many-to-one relation '{self.peer_name}' on '{self.owner_type}' holds at "
                    f"most one peer: min_count and max_count must be <= 1 "
                    f"(got {self.min_count}, {max_count}).",
                    {"min_count": self.min_count, "max_count": max_count},
                )
        if max_count is not None and (not isinstance(max_count, int) or max_count < self.min_count):
            raise InvalidConfigurationError(
                f"max_count must be None or >= min_count ({self.min_count}), got {max_count!r}.",
                {"min_count": self.min_count, "max_count": max_count},
            )

        meta_columns = tuple(self.meta_columns)
        object.__setattr__(self, "meta_columns", meta_columns)
        self._validate_meta_columns(meta_columns)

        if (
            kind == RelationKind.MANY_TO_MANY
            and self.owner_type == self.peer_type
            and self.owner_name == self.peer_name
        ):
            raise InvalidConfigurationError(
                f"Self-referencing many-to-many relation on '{self.owner_type}' needs two "
                f"distinct role names (both are '{self.owner_name}').",
                {"owner_name": self.owner_name, "peer_name": self.peer_name},
            )

    def _validate_meta_columns(self, meta_columns: tuple[str, ...]) -> None:
        if not meta_columns:
            return
        if self.kind != RelationKind.MANY_TO_MANY:
            raise InvalidConfigurationError(
                f"Metadata columns are only supported on many-to-many relations "
                f"('{self.peer_name}' is {self.kind}).",
                {"meta_columns": list(meta_columns)},
            )
        if len(set(meta_columns)) != len(meta_columns):
            raise InvalidConfigurationError(
                f"Duplicate metadata column in {list(meta_columns)}.",
                {"meta_columns": list(meta_columns)},
            )
        taken = {naming.COUNT_COLUMN, *self.key_columns}
        for column in meta_columns:
            if not naming.valid_role_name(column) or column in taken:
                raise InvalidConfigurationError(
                    f"Invalid metadata column '{column}'. Use a lowercase identifier other "
                    f"than {', '.join(sorted(taken))}.",
                    {"column": column},
                )

    # === Derived names ===

    @property
    def name(self) -> str:
        return self.peer_name

    @property
    def key(self) -> tuple[str, str]:
        return (self.owner_type, self.peer_name)

    @property
    def owner_column(self) -> str:
        return naming.fk_column(self.owner_name)

    @property
    def peer_column(self) -> str:
        return naming.fk_column(self.peer_name)

    @property
    def key_columns(self) -> tuple[str, str]:
        return (self.owner_column, self.peer_column)

    @property
    def junction_table(self) -> str:
        return naming.junction_table(
            self.owner_type, self.owner_name, self.peer_type, self.peer_name
        )

    @property
    def table_name(self) -> str:
        """Table that physically holds this relation's rows or key column."""
        if self.kind == RelationKind.MANY_TO_MANY:
            return self.junction_table
        if self.kind == RelationKind.MANY_TO_ONE:
            return naming.table_name(self.owner_type)
        return naming.table_name(self.peer_type)

    @property
    def column_name(self) -> str | None:
        """Foreign key column for one-to-many / many-to-one relations."""
        if self.kind == RelationKind.MANY_TO_ONE:
            return self.peer_column
        if self.kind == RelationKind.ONE_TO_MANY:
            return self.owner_column
        return None

    def accepts(self, total: int) -> bool:
        """True if ``total`` related rows sit within the cardinality bounds."""
        if total < self.min_count:
            return False
        return self.max_count is None or total <= self.max_count


@dataclass(frozen=True)
class GroupCheckpoint:
    load_state: LoadState
    loaded: RelationMultiset
    added: RelationMultiset
    deleted: RelationMultiset


class RelationGroup:
    """One entity's state for one relation."""

    def __init__(self, definition: RelationDefinition) -> None:
        self.definition = definition
        self.load_state = LoadState.UNLOADED
        self.loaded = RelationMultiset()
        self.added = RelationMultiset()
        self.deleted = RelationMultiset()

    @classmethod
    def create(
        cls,
        kind: str,
        owner_type: str,
        owner_name: str,
        peer_type: str,
        peer_name: str,
        min_count: int = 0,
        max_count: int | None = None,
        meta_columns: tuple[str, ...] | list[str] = (),
    ) -> RelationGroup:
        """Build a group straight from registration parameters."""
        return cls(
            RelationDefinition(
                kind=kind,  # type: ignore[arg-type]
                owner_type=owner_type,
                owner_name=owner_name,
                peer_type=peer_type,
                peer_name=peer_name,
                min_count=min_count,
                max_count=max_count,
                meta_columns=tuple(meta_columns),
            )
        )

    def __repr__(self) -> str:
        return (
            f"RelationGroup({self.definition.owner_type}.{self.name}, {self.kind}, "
            f"{self.load_state}, loaded={self.loaded.counts()}, added={self.added.counts()}, "
            f"deleted={self.deleted.counts()})"
        )

    # === Definition passthrough ===

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def kind(self) -> RelationKind:
        return self.definition.kind

    @property
    def min_count(self) -> int:
        return self.definition.min_count

    @property
    def max_count(self) -> int | None:
        return self.definition.max_count

    @property
    def meta_columns(self) -> tuple[str, ...]:
        return self.definition.meta_columns

    @property
    def is_loaded(self) -> bool:
        return self.load_state == LoadState.LOADED

    @property
    def has_pending_changes(self) -> bool:
        return bool(self.added) or bool(self.deleted)

    # === Mutation ===

    def add(self, peer: Any, count: int = 1, meta: Mapping[str, Any] | None = None) -> int:
        """Relate ``peer`` ``count`` more times.

        Many-to-one groups hold one peer at most, so any current peer is
        cleared first. Returns the peer's total (loaded + added) afterwards;
        callers compare that against ``max_count``.
        """
        if count < 0:
            raise InvalidArgumentError(
                f"Cannot add a negative count ({count}) to '{self.name}'.", {"count": count}
            )
        self._check_meta(meta)
        if self.kind == RelationKind.MANY_TO_ONE:
            self.added.clear()
            for current in self.loaded.peers():
                self.remove(current, self.loaded.get(current))

        self.added.increment(peer, count, meta)
        return self.loaded.get(peer) + self.added.get(peer)

    def remove(self, peer: Any, count: int = 1, track_deletion: bool = True) -> int:
        """Unrelate ``peer`` up to ``count`` times; returns how many were removed.

        Pending additions are cancelled first. Any shortfall comes out of
        ``loaded`` and, when ``track_deletion`` is set, is recorded in
        ``deleted`` so reconciliation retracts it from storage.
        """
        if count < 0:
            raise InvalidArgumentError(
                f"Cannot remove a negative count ({count}) from '{self.name}'.", {"count": count}
            )
        removed = self.added.decrement(peer, count)
        shortfall = count - removed
        if shortfall > 0:
            meta = self.loaded.meta(peer)
            from_loaded = self.loaded.decrement(peer, shortfall)
            if from_loaded and track_deletion:
                self.deleted.increment(peer, from_loaded, meta)
            removed += from_loaded
        return removed

    def populate(self, peer: Any, count: int = 1, meta: Mapping[str, Any] | None = None) -> None:
        """Record a persisted relation read from storage."""
        self.loaded.increment(peer, count, meta)

    def snapshot(self, include_deleted: bool = False) -> RelationMultiset:
        """Fresh multiset of ``loaded`` + ``added`` (+ ``deleted``); state is untouched."""
        result = RelationMultiset().merge(self.loaded).merge(self.added)
        if include_deleted:
            result.merge(self.deleted)
        return result

    def total(self) -> int:
        return self.loaded.total() + self.added.total()

    def single(self) -> Any | None:
        """The peer of a many-to-one relation, or None."""
        peers = self.snapshot().peers()
        return peers[0] if peers else None

    def mark_loaded(self) -> None:
        self.load_state = LoadState.LOADED

    def commit(self) -> None:
        """Fold ``added`` into ``loaded`` and clear ``added``/``deleted``."""
        self.loaded = RelationMultiset().merge(self.loaded).merge(self.added)
        self.added = RelationMultiset()
        self.deleted = RelationMultiset()
        self.mark_loaded()

    def checkpoint(self) -> GroupCheckpoint:
        """Copy of the group's state for ``restore()``."""
        return GroupCheckpoint(
            self.load_state, self.loaded.copy(), self.added.copy(), self.deleted.copy()
        )

    def restore(self, checkpoint: GroupCheckpoint) -> None:
        self.load_state = checkpoint.load_state
        self.loaded = checkpoint.loaded
        self.added = checkpoint.added
        self.deleted = checkpoint.deleted

    def _check_meta(self, meta: Mapping[str, Any] | None) -> None:
        if not meta:
            return
        unknown = sorted(set(meta) - set(self.meta_columns))
        if unknown:
            raise InvalidArgumentError(
                f"Unknown metadata for '{self.name}': {', '.join(unknown)}. "
                f"Declared columns: {', '.join(self.meta_columns) or 'none'}",
                {"unknown": unknown, "meta_columns": list(self.meta_columns)},
            )
