"""Reconciliation engine: save, load and lazy relation reads.

Saving visits an entity's hierarchy root first. At each level it:

1. resolves many-to-one peers (saving unpersisted ones first) into foreign
   key columns of the level's row
2. inserts the row (capturing its generated id) or updates it by level key
3. saves added one-to-many peers and points them at this entity, and points
   removed ones away from it
4. reconciles many-to-many junction rows (see ``planner``)

and finally commits every loaded relation group. The engine issues statements
one at a time and never rolls back; wrap a save in ``store.transaction()`` for
atomicity, inside ``undo_on_error()`` so that entities touched by a rolled
back save get their keys, timestamps and relation state back.
"""

from __future__ import annotations

import logging
from collections.abc import Generator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tallyorm import naming
from tallyorm.core.entity import DEFAULT_SOURCE, Entity, EntityCheckpoint
from tallyorm.core.types import RelationKind, SaveResult
from tallyorm.engine.planner import JunctionAction, plan_junction_writes
from tallyorm.engine.query import QueryBuilder
from tallyorm.exceptions import (
    ConstraintViolationError,
    InvalidArgumentError,
    NotFoundError,
    StorageError,
    UnknownFieldError,
)
from tallyorm.relations.group import RelationDefinition, RelationGroup
from tallyorm.schema.registry import EntityType, Registry
from tallyorm.storage.protocol import Store

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 64


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class _SaveContext:
    """State shared by one top-level save and the peer saves it triggers."""

    result: SaveResult = field(default_factory=SaveResult)
    in_progress: set[int] = field(default_factory=set)
    saved: set[int] = field(default_factory=set)
    depth: int = 0


class ReconciliationEngine:
    """Persists entities and reconciles their relations against storage."""

    def __init__(
        self,
        registry: Registry,
        stores: Store | Mapping[str, Store],
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        """Initialize the engine.

        Args:
            registry: Schema registry
            stores: A store, or a mapping of data source name to store.
                    A single store is bound to the "default" source.
            max_depth: Maximum nesting of peer saves triggered by one save
        """
        self.registry = registry
        if isinstance(stores, Mapping):
            self._stores = dict(stores)
        else:
            self._stores = {DEFAULT_SOURCE: stores}
        if max_depth < 1:
            raise InvalidArgumentError(f"max_depth must be >= 1, got {max_depth}.")
        self.max_depth = max_depth
        self._journal: dict[int, tuple[Entity, EntityCheckpoint]] | None = None

    def store_for(self, source: str) -> Store:
        try:
            return self._stores[source]
        except KeyError:
            raise InvalidArgumentError(
                f"Unknown data source '{source}'. Configured sources: {', '.join(self._stores)}",
                {"source": source, "available_sources": list(self._stores)},
            ) from None

    def new(self, type_name: str, source: str = DEFAULT_SOURCE, **values: Any) -> Entity:
        """Create an unsaved entity bound to this engine."""
        return Entity(type_name, self.registry, values, source=source, engine=self)

    @contextmanager
    def undo_on_error(self) -> Generator[None, None, None]:
        """Restore every entity saved or deleted in the block if the block raises.

        Pair it with a store transaction: the rows roll back, and the entities
        get back the keys, timestamps and relation state they had before, so
        saving them again inserts afresh. Nested blocks join the outer one.
        """
        if self._journal is not None:
            yield
            return
        self._journal = {}
        try:
            yield
        except BaseException:
            for entity, checkpoint in reversed(list(self._journal.values())):
                entity._restore(checkpoint)
            logger.debug(f"Restored {len(self._journal)} entities after a failed block")
            raise
        finally:
            self._journal = None

    def _record(self, entity: Entity) -> None:
        if self._journal is not None and id(entity) not in self._journal:
            self._journal[id(entity)] = (entity, entity._checkpoint())

    # === Save ===

    def save(self, entity: Entity) -> SaveResult:
        """Persist ``entity``, its relation changes and any unsaved peers they need.

        Raises:
            ConstraintViolationError: If a relation count is out of bounds or
                peers reference each other in an unresolvable cycle
            StorageError: If a statement fails
        """
        ctx = _SaveContext()
        self._save(entity, ctx)
        logger.debug(
            f"Saved {entity!r}: {ctx.result.inserts} inserts, {ctx.result.updates} updates, "
            f"{ctx.result.deletes} deletes, {ctx.result.relation_writes} relation writes"
        )
        return ctx.result

    def _save(self, entity: Entity, ctx: _SaveContext) -> None:
        if entity.is_deleted:
            raise InvalidArgumentError(f"Cannot save {entity!r}: it has been deleted.")
        if id(entity) in ctx.in_progress:
            raise ConstraintViolationError(
                f"Cyclic reference: {entity.type_name} must be saved before itself. "
                "Save one side of the cycle without the relation first.",
                type_name=entity.type_name,
            )
        if ctx.depth >= self.max_depth:
            raise ConstraintViolationError(
                f"Save of {entity.type_name} nests more than {self.max_depth} peer saves.",
                type_name=entity.type_name,
                count=ctx.depth,
            )

        self._record(entity)
        ctx.in_progress.add(id(entity))
        ctx.depth += 1
        try:
            if entity._engine is None:
                entity._engine = self
            self._prepare_groups(entity)
            now = utc_now()
            for level in self.registry.hierarchy_of(entity.type_name):
                self._save_level(entity, level, now, ctx)
            for group in entity.groups():
                if group.is_loaded:
                    group.commit()
            entity.altered_at = now
            if entity.created_at is None:
                entity.created_at = now
            ctx.result.entities_saved += 1
            ctx.saved.add(id(entity))
        finally:
            ctx.in_progress.discard(id(entity))
            ctx.depth -= 1

    def _prepare_groups(self, entity: Entity) -> None:
        """Read unloaded groups with pending changes, then check cardinalities."""
        for group in entity.groups():
            if not group.is_loaded and group.has_pending_changes and entity.identity is not None:
                self.load_relation(entity, group.name)
            if not group.is_loaded:
                continue
            total = group.snapshot().total()
            if not group.definition.accepts(total):
                bound = (
                    f"at least {group.min_count}"
                    if total < group.min_count
                    else f"at most {group.max_count}"
                )
                raise ConstraintViolationError(
                    f"Relation '{group.name}' on '{entity.type_name}' needs {bound} related "
                    f"rows, has {total}.",
                    type_name=entity.type_name,
                    relation_name=group.name,
                    count=total,
                )

    def _ensure_saved(self, peer: Entity, level_type: str, ctx: _SaveContext) -> Any:
        """Key of ``peer`` in ``level_type``'s table, saving the peer if needed."""
        key = peer.key_for(level_type)
        if key is None:
            self._save(peer, ctx)
            key = peer.key_for(level_type)
        return key

    def _save_level(
        self, entity: Entity, level: EntityType, now: datetime, ctx: _SaveContext
    ) -> None:
        store = self.store_for(entity.source)
        columns: dict[str, Any] = {name: entity._values.get(name) for name in level.fields}
        key = entity.key_for(level.name)

        if level.is_root:
            if key is None:
                columns[naming.CREATED_AT_COLUMN] = now.isoformat()
            columns[naming.ALTERED_AT_COLUMN] = now.isoformat()
        elif key is None:
            columns[naming.parent_key_column()] = entity.key_for(level.parent)

        for group in entity.groups_declared_by(level.name, RelationKind.MANY_TO_ONE):
            if not group.has_pending_changes:
                continue
            peer = group.single()
            definition = group.definition
            value = None if peer is None else self._ensure_saved(peer, definition.peer_type, ctx)
            columns[definition.peer_column] = value
            entity._foreign_keys[definition.key] = value

        if key is None:
            sql, params = QueryBuilder().insert_into(level.table_name).values(columns).build()
            store.execute(sql, params)
            key = store.last_inserted_identity()
            if key is None:
                raise StorageError(
                    f"Store returned no generated id for the insert into '{level.table_name}'.",
                    sql=sql,
                )
            entity._assign_key(level.name, key)
            ctx.result.inserts += 1
            logger.debug(f"Inserted {level.name} row {key!r}")
        else:
            query = QueryBuilder().update(level.table_name)
            for column, value in columns.items():
                query.set(column, value)
            sql, params = query.where(naming.ID_COLUMN, key).build()
            if store.execute(sql, params) == 0:
                raise NotFoundError(level.name, key)
            ctx.result.updates += 1

        for group in entity.groups_declared_by(level.name, RelationKind.ONE_TO_MANY):
            self._write_one_to_many(entity, group, ctx)
        for group in entity.groups_declared_by(level.name, RelationKind.MANY_TO_MANY):
            self._write_many_to_many(entity, group, ctx)

    def _write_one_to_many(self, entity: Entity, group: RelationGroup, ctx: _SaveContext) -> None:
        definition = group.definition
        store = self.store_for(entity.source)
        owner_key = entity.key_for(definition.owner_type)
        peer_table = naming.table_name(definition.peer_type)

        for peer in group.deleted.peers():
            if group.added.get(peer) > 0 or peer.key_for(definition.peer_type) is None:
                continue
            sql, params = (
                QueryBuilder()
                .update(peer_table)
                .set(definition.owner_column, None)
                .where(naming.ID_COLUMN, peer.key_for(definition.peer_type))
                .where(definition.owner_column, owner_key)
                .build()
            )
            store.execute(sql, params)
            ctx.result.updates += 1
            ctx.result.relation_writes += 1

        for peer in group.added.peers():
            if id(peer) not in ctx.in_progress and id(peer) not in ctx.saved:
                self._save(peer, ctx)
            peer_key = self._ensure_saved(peer, definition.peer_type, ctx)
            sql, params = (
                QueryBuilder()
                .update(peer_table)
                .set(definition.owner_column, owner_key)
                .where(naming.ID_COLUMN, peer_key)
                .build()
            )
            store.execute(sql, params)
            ctx.result.updates += 1
            ctx.result.relation_writes += 1

    def _write_many_to_many(self, entity: Entity, group: RelationGroup, ctx: _SaveContext) -> None:
        definition = group.definition
        store = self.store_for(entity.source)
        owner_key = entity.key_for(definition.owner_type)

        for write in plan_junction_writes(group.loaded, group.added, group.deleted):
            peer_key = self._ensure_saved(write.peer, definition.peer_type, ctx)
            meta = {c: write.meta[c] for c in definition.meta_columns if c in write.meta}
            query = QueryBuilder()
            if write.action == JunctionAction.DELETE:
                query.delete_from(definition.junction_table)
                ctx.result.deletes += 1
            elif write.action == JunctionAction.UPDATE:
                query.update(definition.junction_table).set(naming.COUNT_COLUMN, write.count)
                for column, value in meta.items():
                    query.set(column, value)
                ctx.result.updates += 1
            else:
                query.insert_into(definition.junction_table).values(
                    {
                        definition.owner_column: owner_key,
                        definition.peer_column: peer_key,
                        naming.COUNT_COLUMN: write.count,
                        **meta,
                    }
                )
                ctx.result.inserts += 1

            if write.action != JunctionAction.INSERT:
                query.where(definition.owner_column, owner_key)
                query.where(definition.peer_column, peer_key)
            sql, params = query.build()
            store.execute(sql, params)
            ctx.result.relation_writes += 1

    # === Load ===

    def _hierarchy_query(self, type_name: str) -> QueryBuilder:
        """SELECT over every level of ``type_name`` joined by parent key."""
        query = QueryBuilder()
        parent_table = None
        for level in self.registry.hierarchy_of(type_name):
            table = level.table_name
            columns = [naming.ID_COLUMN, *level.fields]
            if level.is_root:
                columns += [naming.CREATED_AT_COLUMN, naming.ALTERED_AT_COLUMN]
            columns += [d.peer_column for d in self._many_to_one_of(level.name)]
            for column in columns:
                query.select(f"{table}.{column}", naming.column_alias(table, column))
            query.from_(table)
            if parent_table is not None:
                query.where_column(
                    f"{table}.{naming.parent_key_column()}", f"{parent_table}.{naming.ID_COLUMN}"
                )
            parent_table = table
        return query

    def _many_to_one_of(self, type_name: str) -> list[RelationDefinition]:
        return self.registry.relations_by_kind(type_name, RelationKind.MANY_TO_ONE)

    def _entity_from_row(self, type_name: str, row: Mapping[str, Any], source: str) -> Entity:
        entity = Entity(type_name, self.registry, source=source, engine=self, lazy=True)
        for level in self.registry.hierarchy_of(type_name):
            table = level.table_name
            entity._assign_key(level.name, row[naming.column_alias(table, naming.ID_COLUMN)])
            for field_name in level.fields:
                entity._values[field_name] = row[naming.column_alias(table, field_name)]
            if level.is_root:
                created = row[naming.column_alias(table, naming.CREATED_AT_COLUMN)]
                altered = row[naming.column_alias(table, naming.ALTERED_AT_COLUMN)]
                entity.created_at = _parse_timestamp(created)
                entity.altered_at = _parse_timestamp(altered)
            for definition in self._many_to_one_of(level.name):
                raw_key = row[naming.column_alias(table, definition.peer_column)]
                entity._foreign_keys[definition.key] = raw_key
        return entity

    def _load_by_key(self, type_name: str, level_type: str, key: Any, source: str) -> Entity:
        table = naming.table_name(level_type)
        query = self._hierarchy_query(type_name).where(f"{table}.{naming.ID_COLUMN}", key)
        sql, params = query.build()
        rows = self.store_for(source).query(sql, params)
        if not rows:
            raise NotFoundError(type_name, key)
        return self._entity_from_row(type_name, rows[0], source)

    def load(self, type_name: str, identity: Any, source: str = DEFAULT_SOURCE) -> Entity:
        """Read the entity whose root-level row id is ``identity``.

        Relation groups stay unloaded until first accessed.

        Raises:
            NotFoundError: If no row has that identity
        """
        root = self.registry.root_of(type_name)
        entity = self._load_by_key(type_name, root.name, identity, source)
        logger.debug(f"Loaded {entity!r}")
        return entity

    def find(
        self,
        type_name: str,
        order_by: str | None = None,
        source: str = DEFAULT_SOURCE,
        **equals: Any,
    ) -> list[Entity]:
        """All entities of ``type_name`` whose fields equal ``equals``.

        ``order_by`` names a persisted field or ``id``; prefix it with ``-``
        for descending order. Without it, rows come back in root id order.

        Raises:
            UnknownFieldError: If a filter or order field is not persisted on the type
        """
        query = self._hierarchy_query(type_name)
        for field_name, value in equals.items():
            query.where(self._qualified_column(type_name, field_name), value)

        if order_by is None:
            root_table = self.registry.root_of(type_name).table_name
            query.order_by(f"{root_table}.{naming.ID_COLUMN}")
        else:
            descending = order_by.startswith("-")
            query.order_by(self._qualified_column(type_name, order_by.lstrip("-")), descending)

        sql, params = query.build()
        rows = self.store_for(source).query(sql, params)
        return [self._entity_from_row(type_name, row, source) for row in rows]

    def _qualified_column(self, type_name: str, field_name: str) -> str:
        if field_name == naming.ID_COLUMN:
            return f"{self.registry.root_of(type_name).table_name}.{naming.ID_COLUMN}"
        level = self.registry.level_of_field(type_name, field_name)
        if level is None:
            available = [naming.ID_COLUMN]
            for item in self.registry.hierarchy_of(type_name):
                available.extend(item.fields)
            raise UnknownFieldError(field_name, type_name, available)
        return f"{level.table_name}.{field_name}"

    def load_relation(self, entity: Entity, relation: str) -> RelationGroup:
        """Populate ``relation``'s loaded multiset from storage (once)."""
        group = entity.group(relation)
        if group.is_loaded:
            return group
        if entity.identity is None:
            group.mark_loaded()
            return group

        definition = group.definition
        if definition.kind == RelationKind.MANY_TO_ONE:
            raw_key = entity._foreign_keys.get(definition.key)
            if raw_key is not None:
                peer_type = definition.peer_type
                group.populate(self._load_by_key(peer_type, peer_type, raw_key, entity.source))
        elif definition.kind == RelationKind.ONE_TO_MANY:
            for peer in self._load_one_to_many(entity, definition):
                group.populate(peer)
        else:
            for peer, count, meta in self._load_many_to_many(entity, definition):
                group.populate(peer, count, meta)

        group.mark_loaded()
        logger.debug(f"Loaded relation '{relation}' of {entity!r}: {group.loaded.total()} rows")
        return group

    def _load_one_to_many(self, entity: Entity, definition: RelationDefinition) -> list[Entity]:
        peer_table = naming.table_name(definition.peer_type)
        sql, params = (
            self._hierarchy_query(definition.peer_type)
            .where(f"{peer_table}.{definition.owner_column}", entity.key_for(definition.owner_type))
            .order_by(f"{peer_table}.{naming.ID_COLUMN}")
            .build()
        )
        rows = self.store_for(entity.source).query(sql, params)
        return [self._entity_from_row(definition.peer_type, row, entity.source) for row in rows]

    def _load_many_to_many(
        self, entity: Entity, definition: RelationDefinition
    ) -> list[tuple[Entity, int, dict[str, Any]]]:
        junction = definition.junction_table
        peer_table = naming.table_name(definition.peer_type)
        query = self._hierarchy_query(definition.peer_type)
        for column in (naming.COUNT_COLUMN, *definition.meta_columns):
            query.select(f"{junction}.{column}", naming.column_alias(junction, column))
        sql, params = (
            query.from_(junction)
            .where_column(
                f"{junction}.{definition.peer_column}", f"{peer_table}.{naming.ID_COLUMN}"
            )
            .where(f"{junction}.{definition.owner_column}", entity.key_for(definition.owner_type))
            .order_by(f"{peer_table}.{naming.ID_COLUMN}")
            .build()
        )
        result = []
        for row in self.store_for(entity.source).query(sql, params):
            peer = self._entity_from_row(definition.peer_type, row, entity.source)
            count = int(row[naming.column_alias(junction, naming.COUNT_COLUMN)])
            meta = {c: row[naming.column_alias(junction, c)] for c in definition.meta_columns}
            if count > 0:
                result.append((peer, count, meta))
        return result

    # === Delete ===

    def delete(self, entity: Entity) -> int:
        """Delete ``entity``'s rows, most derived level first.

        Relation rows that point at the entity (junction rows, foreign keys on
        other tables) are left in place. Returns the number of rows deleted.
        """
        if entity.identity is None:
            raise InvalidArgumentError(f"Cannot delete {entity!r}: it was never saved.")
        self._record(entity)
        store = self.store_for(entity.source)
        deleted = 0
        for level in reversed(self.registry.hierarchy_of(entity.type_name)):
            key = entity.key_for(level.name)
            if key is None:
                continue
            query = QueryBuilder().delete_from(level.table_name).where(naming.ID_COLUMN, key)
            sql, params = query.build()
            deleted += store.execute(sql, params)
        entity._deleted = True
        logger.info(f"Deleted {entity!r} ({deleted} rows)")
        return deleted
