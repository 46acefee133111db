"""
statusflow: audit log service

File: src/statusflow/observability/audit.py

Purpose
- Level-aware facade over :class:`AuditEventRepo` used by the engine.
- Every event is mirrored to stdlib ``logging`` (the secondary channel).
- Database writes are toggleable; retention is explicit configuration.

Functional requirements
- A failed write of an error-level event raises :class:`AuditWriteError`.
- A failed write of an info or warning event is logged and tolerated.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Mapping
from typing import Final

from statusflow.constants import DEFAULT_RETENTION_DAYS, MIN_RETENTION_DAYS
from statusflow.domain.errors import AuditWriteError
from statusflow.domain.models import AuditEvent, AuditLevel
from statusflow.persistence.repositories import AuditEventRepo, AuditQueryFilters
from statusflow.persistence.state_db import StateDBError

_LOGGER: Final[logging.Logger] = logging.getLogger("statusflow.audit")

_STDLIB_LEVELS: Final[Mapping[AuditLevel, int]] = {
    AuditLevel.INFO: logging.INFO,
    AuditLevel.WARNING: logging.WARNING,
    AuditLevel.ERROR: logging.ERROR,
}


class AuditLog:
    """Write and maintain audit events with explicit settings."""

    def __init__(
        self,
        repo: AuditEventRepo,
        *,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        db_logging_enabled: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self._repo = repo
        self._retention_days = retention_days
        self.db_logging_enabled = db_logging_enabled
        self._logger = logger if logger is not None else _LOGGER

    @property
    def repo(self) -> AuditEventRepo:
        return self._repo

    def info(
        self,
        message: str,
        subject_type: str,
        subject_id: int,
        rule_id: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> int | None:
        return self.log(AuditLevel.INFO, message, subject_type, subject_id, rule_id, context)

    def warning(
        self,
        message: str,
        subject_type: str,
        subject_id: int,
        rule_id: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> int | None:
        return self.log(AuditLevel.WARNING, message, subject_type, subject_id, rule_id, context)

    def error(
        self,
        message: str,
        subject_type: str,
        subject_id: int,
        rule_id: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> int | None:
        return self.log(AuditLevel.ERROR, message, subject_type, subject_id, rule_id, context)

    def log(
        self,
        level: AuditLevel,
        message: str,
        subject_type: str,
        subject_id: int,
        rule_id: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> int | None:
        """Mirror to stdlib logging, then persist. Returns the event id, or None when not stored."""

        self._logger.log(
            _STDLIB_LEVELS[level],
            message,
            extra={
                "audit_subject_type": subject_type,
                "audit_subject_id": subject_id,
                "audit_rule_id": rule_id,
                "audit_context": dict(context) if context is not None else None,
            },
        )
        if not self.db_logging_enabled:
            return None

        try:
            return self._repo.add(level, message, subject_type, subject_id, rule_id, context)
        except (StateDBError, sqlite3.Error, ValueError) as exc:
            if level is AuditLevel.ERROR:
                raise AuditWriteError(f"failed to persist error audit event: {exc}") from exc
            self._logger.warning(
                "audit event could not be persisted: %s",
                exc,
                extra={"audit_level": level.value, "audit_message": message},
            )
            return None

    def retention_days(self) -> int:
        """Configured retention window; non-positive values fall back to the default."""

        if self._retention_days > 0:
            return max(MIN_RETENTION_DAYS, self._retention_days)
        return DEFAULT_RETENTION_DAYS

    def clean_old_events(self, days: int | None = None) -> int:
        effective = days if days is not None and days > 0 else self.retention_days()
        deleted = self._repo.delete_older_than(max(MIN_RETENTION_DAYS, effective))
        self._logger.info(
            "purged %d audit events older than %d days",
            deleted,
            effective,
            extra={"audit_deleted": deleted, "audit_retention_days": effective},
        )
        return deleted

    def query(
        self,
        filters: AuditQueryFilters | None = None,
        limit: int = 50,
        offset: int = 0,
        order_by: str = "created_at",
        order_direction: str = "DESC",
    ) -> list[AuditEvent]:
        return self._repo.query(filters, limit, offset, order_by, order_direction)

    def count(self, filters: AuditQueryFilters | None = None) -> int:
        return self._repo.count(filters)

    def get(self, event_id: int) -> AuditEvent | None:
        return self._repo.get_by_id(event_id)

    def delete(self, event_id: int) -> bool:
        return self._repo.delete_by_id(event_id)

    def delete_all(self) -> int:
        return self._repo.delete_all()


__all__ = ["AuditLog"]
