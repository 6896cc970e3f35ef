"""Many-to-many reconciliation.

Given a group's ``loaded``, ``added`` and ``deleted`` multisets, decide which
junction rows to insert, update or delete. For every peer in the union, with
``l``, ``a``, ``d`` its count in each multiset:

======================  =====================================
case                    write
======================  =====================================
l > 0, a == 0, d == 0   none
l == 0, a == 0, d > 0   DELETE the junction row
l + a > 0, otherwise    UPDATE (row exists: l > 0 or d > 0)
                        or INSERT, with ``count = l + a``
======================  =====================================

The plan depends only on the counts, never on visiting order, and a group
with nothing added or deleted yields an empty plan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from tallyorm.relations.multiset import RelationMultiset


class JunctionAction(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class JunctionWrite:
    """One junction-row write. ``count`` is 0 for deletes."""

    action: JunctionAction
    peer: Any
    count: int = 0
    meta: dict[str, Any] = field(default_factory=dict)


def plan_junction_writes(
    loaded: RelationMultiset,
    added: RelationMultiset,
    deleted: RelationMultiset,
) -> list[JunctionWrite]:
    """Plan the junction writes that make storage match ``loaded + added``."""
    union = RelationMultiset().merge(loaded).merge(added).merge(deleted)
    writes = []
    for peer in union.peers():
        n_loaded, n_added = loaded.get(peer), added.get(peer)
        n_deleted = deleted.get(peer)
        if n_loaded > 0 and n_added == 0 and n_deleted == 0:
            continue
        if n_loaded == 0 and n_added == 0:
            writes.append(JunctionWrite(JunctionAction.DELETE, peer))
            continue

        meta = loaded.meta(peer)
        meta.update(added.meta(peer))
        action = JunctionAction.UPDATE if n_loaded > 0 or n_deleted > 0 else JunctionAction.INSERT
        writes.append(JunctionWrite(action, peer, n_loaded + n_added, meta))
    return writes
