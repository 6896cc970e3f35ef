"""Relation bookkeeping for TallyORM."""

from tallyorm.relations.group import RelationDefinition, RelationGroup
from tallyorm.relations.multiset import RelationMultiset, peer_key

__all__ = [
    "RelationDefinition",
    "RelationGroup",
    "RelationMultiset",
    "peer_key",
]
