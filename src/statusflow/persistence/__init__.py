"""
statusflow: persistence layer

File: src/statusflow/persistence/__init__.py

Purpose
- SQLite state DB access, migrations, rule and audit repositories, and the
  order entity store.

Functional requirements
- Each entity transition commits on its own; no transaction spans a run.

Non-functional requirements
- SQLite-first; avoid heavy DB dependencies.
"""

from statusflow.persistence.entity_store import EntityStore, OrderStore, TransitionRecord
from statusflow.persistence.repositories import (
    AuditEventRepo,
    AuditQueryFilters,
    OrderStateRepo,
    RuleRepo,
    RunLockRepo,
)
from statusflow.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "AuditEventRepo",
    "AuditQueryFilters",
    "EntityStore",
    "OrderStateRepo",
    "OrderStore",
    "RuleRepo",
    "RunLockRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "TransitionRecord",
]
