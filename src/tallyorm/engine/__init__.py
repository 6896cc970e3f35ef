"""Reconciliation engine for TallyORM.

- ``query``: parameterized statement builder, one method per clause
- ``planner``: many-to-many junction write planning
- ``reconciler``: save / load / lazy relation reads
"""

from tallyorm.engine.planner import JunctionAction, JunctionWrite, plan_junction_writes
from tallyorm.engine.query import QueryBuilder
from tallyorm.engine.reconciler import ReconciliationEngine

__all__ = [
    "JunctionAction",
    "JunctionWrite",
    "QueryBuilder",
    "ReconciliationEngine",
    "plan_junction_writes",
]
