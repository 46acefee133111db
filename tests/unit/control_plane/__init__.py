"""Engine wiring helpers shared by control-plane tests."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from statusflow.domain.models import AuditLevel
from statusflow.observability.audit import AuditLog
from statusflow.persistence.entity_store import OrderStore
from statusflow.persistence.repositories import AuditEventRepo, AuditQueryFilters
from statusflow.persistence.state_db import StateDB, StateDBError


class FlakyOrderStore(OrderStore):
    """Order store whose transition raises for selected order ids."""

    def __init__(self, db: StateDB, *, fail_ids: set[int], **kwargs: Any) -> None:
        super().__init__(db, **kwargs)
        self.fail_ids = fail_ids

    def transition(self, entity_id: int, **kwargs: Any) -> None:
        if entity_id in self.fail_ids:
            raise RuntimeError(f"carrier API timeout for order {entity_id}")
        super().transition(entity_id, **kwargs)


class BrokenAuditRepo(AuditEventRepo):
    """Audit repository that refuses writes at the given levels."""

    def __init__(self, db: StateDB, *, broken_levels: set[str], **kwargs: Any) -> None:
        super().__init__(db, **kwargs)
        self.broken_levels = broken_levels

    def add(
        self,
        level: AuditLevel | str,
        message: str,
        subject_type: str,
        subject_id: int,
        rule_id: int | None = None,
        context: Mapping[str, object] | None = None,
        *,
        created_at: datetime | None = None,
    ) -> int:
        if AuditLevel(level).value in self.broken_levels:
            raise StateDBError("disk I/O error")
        return super().add(
            level, message, subject_type, subject_id, rule_id, context, created_at=created_at
        )


def messages(audit: AuditLog, **filters: Any) -> list[tuple[str, str]]:
    """(level, message) pairs in insertion order."""

    events = audit.query(
        AuditQueryFilters(**filters), limit=1000, order_by="id", order_direction="ASC"
    )
    return [(event.level.value, event.message) for event in events]


__all__ = ["BrokenAuditRepo", "FlakyOrderStore", "messages"]
