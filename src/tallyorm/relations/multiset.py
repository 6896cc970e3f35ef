"""Counted multiset of related-entity references.

A RelationMultiset is the atomic bookkeeping unit behind every relation
group: each entry is ``(peer, count, meta)`` where ``count`` is how many times
the peer is related and ``meta`` holds per-pair values (junction metadata
columns for many-to-many relations).

Peers are keyed by identity once persisted and by object identity before
that. A peer saved while it sits in a multiset is re-keyed on its next lookup,
and so is one whose identity was dropped when its transaction rolled back.
"""

from __future__ import annotations

from collections.abc import Hashable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from tallyorm.exceptions import InvalidArgumentError

PERSISTED = "persisted"
TRANSIENT = "transient"


def peer_key(peer: Any) -> Hashable:
    """Key under which a peer is stored.

    Two peers share a key iff both are persisted with the same identity, or
    both are unpersisted and are the same object.
    """
    identity = getattr(peer, "identity", None)
    if identity is not None:
        return (PERSISTED, identity)
    return (TRANSIENT, id(peer))


@dataclass
class _Entry:
    peer: Any
    count: int
    meta: dict[str, Any] = field(default_factory=dict)


class RelationMultiset:
    """Multiset of peers with counts and optional metadata.

    Invariant: every stored count is > 0; an entry that reaches 0 is dropped.
    """

    def __init__(self) -> None:
        self._entries: dict[Hashable, _Entry] = {}

    # === Lookup ===

    def _locate(self, peer: Any) -> Hashable:
        """Return the current key for ``peer``, re-keying a stale entry."""
        key = peer_key(peer)
        if key[0] == PERSISTED:
            stale_keys = [(TRANSIENT, id(peer))]
        elif key in self._entries:
            return key
        else:
            stale_keys = [
                k for k, e in self._entries.items() if k[0] == PERSISTED and e.peer is peer
            ]
        for stale in stale_keys:
            entry = self._entries.get(stale)
            if entry is None or entry.peer is not peer:
                continue
            del self._entries[stale]
            existing = self._entries.get(key)
            if existing is None:
                self._entries[key] = entry
            else:
                existing.count += entry.count
                existing.meta.update(entry.meta)
        return key

    def get(self, peer: Any) -> int:
        """Stored count for ``peer`` (0 if absent)."""
        entry = self._entries.get(self._locate(peer))
        return entry.count if entry else 0

    def meta(self, peer: Any) -> dict[str, Any]:
        """Metadata stored for ``peer`` (empty if absent)."""
        entry = self._entries.get(self._locate(peer))
        return dict(entry.meta) if entry else {}

    def __contains__(self, peer: Any) -> bool:
        return self.get(peer) > 0

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.peers())

    def __repr__(self) -> str:
        return f"RelationMultiset({self.counts()!r})"

    # === Mutation ===

    def set(self, peer: Any, count: int, meta: Mapping[str, Any] | None = None) -> None:
        """Replace the count for ``peer`` and merge in ``meta``; 0 removes the entry."""
        if count < 0:
            raise InvalidArgumentError(
                f"Multiset count must be >= 0, got {count}.", {"count": count}
            )
        key = self._locate(peer)
        if count == 0:
            self._entries.pop(key, None)
            return

        entry = self._entries.get(key)
        if entry is None:
            self._entries[key] = _Entry(peer, count, dict(meta or {}))
        else:
            entry.count = count
            if meta:
                entry.meta.update(meta)

    def increment(self, peer: Any, delta: int = 1, meta: Mapping[str, Any] | None = None) -> int:
        """Add ``delta`` to the count for ``peer``; returns the new count."""
        if delta < 0:
            raise InvalidArgumentError(
                f"Cannot increment by a negative delta ({delta}). Use decrement() instead.",
                {"delta": delta},
            )
        key = self._locate(peer)
        entry = self._entries.get(key)
        if entry is None:
            if delta == 0:
                return 0
            entry = self._entries[key] = _Entry(peer, 0)
        entry.count += delta
        if meta:
            entry.meta.update(meta)
        return entry.count

    def decrement(self, peer: Any, delta: int = 1) -> int:
        """Remove up to ``delta`` from the count for ``peer``.

        Returns how much was actually removed, which is never more than was
        stored. The entry is dropped once its count reaches 0.
        """
        if delta < 0:
            raise InvalidArgumentError(
                f"Cannot decrement by a negative delta ({delta}). Use increment() instead.",
                {"delta": delta},
            )
        key = self._locate(peer)
        entry = self._entries.get(key)
        if entry is None:
            return 0
        if entry.count <= delta:
            del self._entries[key]
            return entry.count
        entry.count -= delta
        return delta

    def remove(self, peer: Any) -> None:
        """Drop ``peer`` regardless of its count."""
        self._entries.pop(self._locate(peer), None)

    def clear(self) -> None:
        self._entries.clear()

    def merge(self, other: RelationMultiset) -> RelationMultiset:
        """Increment this multiset by every entry of ``other``; returns self."""
        for peer, count, meta in other.entries():
            self.increment(peer, count, meta)
        return self

    def copy(self) -> RelationMultiset:
        return RelationMultiset().merge(self)

    # === Queries ===

    def total(self) -> int:
        """Sum of all counts, duplicates included."""
        return sum(entry.count for entry in self._entries.values())

    def entries(self) -> list[tuple[Any, int, dict[str, Any]]]:
        """``(peer, count, meta)`` triples in insertion order."""
        return [(e.peer, e.count, dict(e.meta)) for e in list(self._entries.values())]

    def peers(self) -> list[Any]:
        return [e.peer for e in self._entries.values()]

    def counts(self) -> dict[Hashable, int]:
        """Mapping of peer key to count, handy for comparing multisets."""
        return {peer_key(e.peer): e.count for e in self._entries.values()}
