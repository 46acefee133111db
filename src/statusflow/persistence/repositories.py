"""
statusflow: repositories

File: src/statusflow/persistence/repositories.py

Purpose
- Repository/DAO classes for reading and writing rules, audit events, the
  order-state catalog, and run locks in the state DB.

What is included in this file
- RuleRepo: the engine's read path (active / auto-execute / by id) plus the
  administrative create, update, delete, and toggle operations.
- AuditEventRepo: append-only audit events with filtered, paginated queries
  and retention purges.
- OrderStateRepo: id -> display name lookups.
- RunLockRepo: lease-based mutual exclusion for overlapping runs.

Functional requirements
- Sort fields and directions for audit queries are validated against a fixed
  whitelist; they are never interpolated from caller text.
- Audit events are never mutated after insert.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Final

from statusflow.constants import (
    DEFAULT_AUDIT_PAGE_SIZE,
    DEFAULT_RETENTION_DAYS,
    MAX_PAGE_SIZE,
)
from statusflow.domain.errors import AuditQueryValidationError, RuleNotFoundError
from statusflow.domain.filters import FilterError, FilterExpression, parse_filter_json, to_json
from statusflow.domain.models import (
    AuditEvent,
    AuditLevel,
    JSONValue,
    OrderState,
    Rule,
    as_json_object,
    parse_datetime,
)
from statusflow.persistence.state_db import (
    RowValue,
    StateDB,
    canonical_json,
    to_iso8601z,
)

if TYPE_CHECKING:
    import sqlite3

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

Clock = Callable[[], datetime]

_AUDIT_ORDER_COLUMNS: Final[dict[str, str]] = {
    "id": "id",
    "level": "level",
    "message": "message",
    "subject_type": "subject_type",
    "subject_id": "subject_id",
    "rule_id": "rule_id",
    "created_at": "created_at",
}
_ORDER_DIRECTIONS: Final[frozenset[str]] = frozenset({"ASC", "DESC"})

_RULE_COLUMNS: Final[str] = (
    "id, source_state, target_state, delay_hours, condition_json, "
    "auto_execute, active, created_at, updated_at"
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class _BaseRepo:
    def __init__(self, db: StateDB, *, clock: Clock | None = None) -> None:
        self._db = db
        self._clock = clock or _utc_now
        self._db.migrate()

    def _now_iso(self) -> str:
        return to_iso8601z(self._clock())

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class RuleRepo(_BaseRepo):
    """Repository for transition rules."""

    def get_active_rules(self, rule_id: int | None = None) -> list[Rule]:
        sql = f"SELECT {_RULE_COLUMNS} FROM rules WHERE active = 1"
        params: list[RowValue] = []
        if rule_id is not None:
            sql += " AND id = ?"
            params.append(rule_id)
        sql += " ORDER BY id ASC"
        return [_rule_from_row(row) for row in self._db.query_all(sql, tuple(params))]

    def get_auto_execute_rules(self) -> list[Rule]:
        rows = self._db.query_all(
            f"SELECT {_RULE_COLUMNS} FROM rules WHERE active = 1 AND auto_execute = 1 "
            "ORDER BY id ASC"
        )
        return [_rule_from_row(row) for row in rows]

    def get_rule_by_id(self, rule_id: int) -> Rule:
        rule = self.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def get(self, rule_id: int) -> Rule | None:
        row = self._db.query_one(f"SELECT {_RULE_COLUMNS} FROM rules WHERE id = ?", (rule_id,))
        return None if row is None else _rule_from_row(row)

    def list_rules(
        self,
        *,
        active: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Rule]:
        self._validate_page(limit, offset)
        sql = f"SELECT {_RULE_COLUMNS} FROM rules"
        params: list[RowValue] = []
        if active is not None:
            sql += " WHERE active = ?"
            params.append(int(active))
        sql += " ORDER BY id ASC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        return [_rule_from_row(row) for row in self._db.query_all(sql, tuple(params))]

    def create(
        self,
        *,
        source_state: int,
        target_state: int,
        delay_hours: int = 0,
        condition: FilterExpression | None = None,
        auto_execute: bool = False,
        active: bool = True,
    ) -> Rule:
        _validate_rule_fields(source_state, target_state, delay_hours)
        now = self._now_iso()
        rule_id = self._db.insert(
            """
            INSERT INTO rules (
                source_state, target_state, delay_hours, condition_json,
                auto_execute, active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                source_state,
                target_state,
                delay_hours,
                to_json(condition),
                int(auto_execute),
                int(active),
                now,
                now,
            ),
        )
        return self.get_rule_by_id(rule_id)

    def update(
        self,
        rule_id: int,
        *,
        source_state: int,
        target_state: int,
        delay_hours: int,
        condition: FilterExpression | None,
        auto_execute: bool,
        active: bool,
    ) -> Rule:
        _validate_rule_fields(source_state, target_state, delay_hours)
        with self._db.transaction() as conn:
            self._require_exists(rule_id, conn=conn)
            self._db.execute(
                """
                UPDATE rules SET
                    source_state = ?, target_state = ?, delay_hours = ?, condition_json = ?,
                    auto_execute = ?, active = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    source_state,
                    target_state,
                    delay_hours,
                    to_json(condition),
                    int(auto_execute),
                    int(active),
                    self._now_iso(),
                    rule_id,
                ),
                conn=conn,
            )
        return self.get_rule_by_id(rule_id)

    def delete(self, rule_id: int) -> bool:
        with self._db.transaction() as conn:
            self._require_exists(rule_id, conn=conn)
            return self._db.execute("DELETE FROM rules WHERE id = ?", (rule_id,), conn=conn) > 0

    def toggle_active(self, rule_id: int) -> Rule:
        return self._toggle(rule_id, "active")

    def toggle_auto_execute(self, rule_id: int) -> Rule:
        return self._toggle(rule_id, "auto_execute")

    def _toggle(self, rule_id: int, column: str) -> Rule:
        if column not in {"active", "auto_execute"}:
            raise ValueError(f"unsupported toggle column: {column}")
        with self._db.transaction() as conn:
            self._require_exists(rule_id, conn=conn)
            self._db.execute(
                f"UPDATE rules SET {column} = 1 - {column}, updated_at = ? WHERE id = ?",
                (self._now_iso(), rule_id),
                conn=conn,
            )
        return self.get_rule_by_id(rule_id)

    def _require_exists(self, rule_id: int, *, conn: sqlite3.Connection) -> None:
        row = self._db.query_one("SELECT id FROM rules WHERE id = ?", (rule_id,), conn=conn)
        if row is None:
            raise RuleNotFoundError(rule_id)


@dataclass(frozen=True, slots=True)
class AuditQueryFilters:
    """Optional narrowing criteria for audit queries; ``None`` means unfiltered."""

    level: AuditLevel | str | None = None
    subject_type: str | None = None
    subject_id: int | None = None
    rule_id: int | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None
    include_rule_info: bool = False

    def where_clause(self) -> tuple[str, tuple[RowValue, ...]]:
        clauses: list[str] = []
        params: list[RowValue] = []
        if self.level is not None:
            clauses.append("e.level = ?")
            params.append(AuditLevel(self.level).value)
        if self.subject_type:
            clauses.append("e.subject_type = ?")
            params.append(self.subject_type)
        if self.subject_id is not None:
            clauses.append("e.subject_id = ?")
            params.append(self.subject_id)
        if self.rule_id is not None:
            clauses.append("e.rule_id = ?")
            params.append(self.rule_id)
        if self.date_from is not None:
            clauses.append("e.created_at >= ?")
            params.append(to_iso8601z(self.date_from))
        if self.date_to is not None:
            clauses.append("e.created_at <= ?")
            params.append(to_iso8601z(self.date_to))
        if self.search:
            clauses.append("e.message LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(self.search)}%")
        if not clauses:
            return "", ()
        return " WHERE " + " AND ".join(clauses), tuple(params)


class AuditEventRepo(_BaseRepo):
    """Append-only store of structured audit events."""

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
        parsed_level = AuditLevel(level)
        context_json = (
            None if context is None else canonical_json(as_json_object(context, "context"))
        )
        timestamp = to_iso8601z(created_at) if created_at is not None else self._now_iso()
        return self._db.insert(
            """
            INSERT INTO audit_events (
                level, message, subject_type, subject_id, rule_id, context_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                parsed_level.value,
                message,
                subject_type,
                subject_id,
                rule_id,
                context_json,
                timestamp,
            ),
        )

    def query(
        self,
        filters: AuditQueryFilters | None = None,
        limit: int = DEFAULT_AUDIT_PAGE_SIZE,
        offset: int = 0,
        order_by: str = "created_at",
        order_direction: str = "DESC",
    ) -> list[AuditEvent]:
        column = _AUDIT_ORDER_COLUMNS.get(order_by)
        if column is None:
            raise AuditQueryValidationError(f"Invalid order field: {order_by}")
        direction = order_direction.upper()
        if direction not in _ORDER_DIRECTIONS:
            raise AuditQueryValidationError(f"Invalid order direction: {order_direction}")
        self._validate_page(limit, offset)

        active_filters = filters or AuditQueryFilters()
        where, params = active_filters.where_clause()
        select = "SELECT e.*"
        joins = ""
        if active_filters.include_rule_info:
            select += ", r.source_state AS rule_source_state, r.target_state AS rule_target_state"
            joins = " LEFT JOIN rules r ON e.rule_id = r.id"
        sql = (
            f"{select} FROM audit_events e{joins}{where} "
            f"ORDER BY e.{column} {direction}, e.id {direction} LIMIT ? OFFSET ?"
        )
        rows = self._db.query_all(sql, (*params, limit, offset))
        return [_audit_event_from_row(row) for row in rows]

    def count(self, filters: AuditQueryFilters | None = None) -> int:
        where, params = (filters or AuditQueryFilters()).where_clause()
        row = self._db.query_one(f"SELECT COUNT(*) AS n FROM audit_events e{where}", params)
        return 0 if row is None else _row_int(row, "n", "audit_events.count")

    def get_by_id(self, event_id: int) -> AuditEvent | None:
        row = self._db.query_one("SELECT e.* FROM audit_events e WHERE e.id = ?", (event_id,))
        return None if row is None else _audit_event_from_row(row)

    def delete_older_than(self, days: int) -> int:
        """Delete events created strictly before ``now - days``; non-positive means 30."""

        effective_days = days if days > 0 else DEFAULT_RETENTION_DAYS
        cutoff = to_iso8601z(self._clock() - timedelta(days=effective_days))
        return self._db.execute("DELETE FROM audit_events WHERE created_at < ?", (cutoff,))

    def delete_by_id(self, event_id: int) -> bool:
        return self._db.execute("DELETE FROM audit_events WHERE id = ?", (event_id,)) > 0

    def delete_all(self) -> int:
        return self._db.execute("DELETE FROM audit_events")


class OrderStateRepo(_BaseRepo):
    """Catalog of order state display names."""

    def upsert(self, state: OrderState) -> OrderState:
        self._db.execute(
            """
            INSERT INTO order_states (id, name) VALUES (?, ?)
            ON CONFLICT(id) DO UPDATE SET name = excluded.name
            """,
            (state.id, state.name),
        )
        return state

    def list(self) -> list[OrderState]:
        rows = self._db.query_all("SELECT id, name FROM order_states ORDER BY id ASC")
        return [
            OrderState(
                id=_row_int(row, "id", "order_states.id"),
                name=_row_text(row, "name", "order_states.name"),
            )
            for row in rows
        ]

    def names(self) -> dict[int, str]:
        return {state.id: state.name for state in self.list()}


class RunLockRepo(_BaseRepo):
    """Lease-based named locks; an expired lease may be taken over."""

    def acquire(self, name: str, owner: str, *, lease_seconds: int) -> bool:
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be > 0")
        now = self._clock()
        with self._db.transaction(immediate=True) as conn:
            row = self._db.query_one(
                "SELECT owner, expires_at FROM run_locks WHERE name = ?",
                (name,),
                conn=conn,
            )
            if row is not None:
                expires_at = parse_datetime(_row_text(row, "expires_at", "run_locks.expires_at"))
                if expires_at > now and row.get("owner") != owner:
                    return False
            self._db.execute(
                """
                INSERT INTO run_locks (name, owner, acquired_at, expires_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    owner = excluded.owner,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at
                """,
                (
                    name,
                    owner,
                    to_iso8601z(now),
                    to_iso8601z(now + timedelta(seconds=lease_seconds)),
                ),
                conn=conn,
            )
        return True

    def release(self, name: str, owner: str) -> bool:
        return (
            self._db.execute(
                "DELETE FROM run_locks WHERE name = ? AND owner = ?",
                (name, owner),
            )
            > 0
        )

    def holder(self, name: str) -> str | None:
        row = self._db.query_one("SELECT owner FROM run_locks WHERE name = ?", (name,))
        return None if row is None else _row_text(row, "owner", "run_locks.owner")


def _validate_rule_fields(source_state: int, target_state: int, delay_hours: int) -> None:
    for path, value in (("source_state", source_state), ("target_state", target_state)):
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValueError(f"{path}: must be a positive integer state id")
    if isinstance(delay_hours, bool) or not isinstance(delay_hours, int) or delay_hours < 0:
        raise ValueError("delay_hours: must be an integer >= 0")


def _rule_from_row(row: Mapping[str, RowValue]) -> Rule:
    condition_raw = row.get("condition_json")
    if condition_raw is not None and not isinstance(condition_raw, str):
        raise ValueError("rules.condition_json: expected text value")
    condition: FilterExpression | None = None
    condition_error: str | None = None
    try:
        condition = parse_filter_json(condition_raw)
    except FilterError as exc:
        condition_error = str(exc)
    return Rule(
        id=_row_int(row, "id", "rules.id"),
        source_state=_row_int(row, "source_state", "rules.source_state"),
        target_state=_row_int(row, "target_state", "rules.target_state"),
        delay_hours=_row_int(row, "delay_hours", "rules.delay_hours"),
        condition=condition,
        auto_execute=bool(_row_int(row, "auto_execute", "rules.auto_execute")),
        active=bool(_row_int(row, "active", "rules.active")),
        created_at=parse_datetime(_row_text(row, "created_at", "rules.created_at")),
        updated_at=parse_datetime(_row_text(row, "updated_at", "rules.updated_at")),
        condition_error=condition_error,
    )


def _audit_event_from_row(row: Mapping[str, RowValue]) -> AuditEvent:
    context: dict[str, JSONValue] | None = None
    context_raw = row.get("context_json")
    if context_raw is not None:
        if not isinstance(context_raw, str):
            raise ValueError("audit_events.context_json: expected text value")
        try:
            loaded = json.loads(context_raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"audit_events.context_json: invalid JSON ({exc})") from exc
        context = as_json_object(loaded, "audit_events.context_json")
    rule_id = row.get("rule_id")
    source = row.get("rule_source_state")
    target = row.get("rule_target_state")
    return AuditEvent(
        id=_row_int(row, "id", "audit_events.id"),
        level=AuditLevel(_row_text(row, "level", "audit_events.level")),
        message=_row_text(row, "message", "audit_events.message"),
        subject_type=_row_text(row, "subject_type", "audit_events.subject_type"),
        subject_id=_row_int(row, "subject_id", "audit_events.subject_id"),
        created_at=parse_datetime(_row_text(row, "created_at", "audit_events.created_at")),
        rule_id=rule_id if isinstance(rule_id, int) else None,
        context=context,
        rule_source_state=source if isinstance(source, int) else None,
        rule_target_state=target if isinstance(target, int) else None,
    )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_text(row: Mapping[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text value")
    return value


def _row_int(row: Mapping[str, RowValue], key: str, path: str) -> int:
    value = row.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{path}: expected integer value")
    return value


__all__ = [
    "AuditEventRepo",
    "AuditQueryFilters",
    "Clock",
    "OrderStateRepo",
    "RuleRepo",
    "RunLockRepo",
]
