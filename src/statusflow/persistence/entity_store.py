"""
statusflow: order entity store

File: src/statusflow/persistence/entity_store.py

Purpose
- The entity-side collaborator of the engine: candidate queries, fetch by id,
  and state transitions that also append the entity's own history trail.

Functional requirements
- Candidate queries bind every value as a parameter; rule conditions are
  compiled from typed expressions against a fixed column whitelist.
- A transition is one immediate transaction: compare-and-set on the current
  state, one ``order_state_history`` row, one ``transition_history`` row.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Final, Protocol

from statusflow.constants import SUBJECT_ORDER
from statusflow.domain.errors import ConcurrentTransitionError
from statusflow.domain.filters import FilterExpression, compile_filter
from statusflow.domain.models import Candidate, Order, parse_datetime
from statusflow.persistence.state_db import RowValue, StateDB, to_iso8601z

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

if TYPE_CHECKING:
    import sqlite3

ORDER_FILTER_COLUMNS: Final[Mapping[str, str]] = {
    "id": "id",
    "current_state": "current_state",
    "total_paid": "total_paid",
    "payment_method": "payment_method",
    "carrier": "carrier",
    "reference": "reference",
    "customer_id": "customer_id",
    "created_at": "created_at",
}


class EntityStore(Protocol):
    """What the engine needs from the store that owns the entities."""

    def find_candidates(
        self,
        *,
        state: int,
        entered_before: datetime | None = None,
        condition: FilterExpression | None = None,
    ) -> list[Candidate]: ...

    def get(self, entity_id: int) -> Order | None: ...

    def transition(
        self,
        entity_id: int,
        *,
        from_state: int,
        to_state: int,
        rule_id: int | None,
        principal: str | None = None,
    ) -> None: ...


@dataclass(frozen=True, slots=True)
class TransitionRecord:
    id: int
    order_id: int
    from_state: int | None
    to_state: int
    rule_id: int | None
    principal: str | None
    created_at: datetime


class OrderStore:
    """SQLite-backed :class:`EntityStore` over ``orders`` and ``order_state_history``."""

    def __init__(self, db: StateDB, *, clock: Callable[[], datetime] | None = None) -> None:
        self._db = db
        self._clock = clock or (lambda: datetime.now(UTC))
        self._db.migrate()

    def add_order(
        self,
        order_id: int,
        state: int,
        *,
        reference: str | None = None,
        total_paid: float | None = None,
        payment_method: str | None = None,
        carrier: str | None = None,
        customer_id: int | None = None,
        entered_at: datetime | None = None,
    ) -> Order:
        """Insert an order and record its entry into ``state``."""

        if order_id <= 0:
            raise ValueError("order_id must be > 0")
        if state <= 0:
            raise ValueError("state must be > 0")
        entered = to_iso8601z(entered_at) if entered_at is not None else to_iso8601z(self._clock())
        with self._db.transaction() as conn:
            self._db.execute(
                """
                INSERT INTO orders (
                    id, reference, current_state, total_paid, payment_method, carrier,
                    customer_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    order_id,
                    reference,
                    state,
                    total_paid,
                    payment_method,
                    carrier,
                    customer_id,
                    entered,
                    entered,
                ),
                conn=conn,
            )
            self._append_state_entry(conn, order_id, state, principal=None, at=entered)
        order = self.get(order_id)
        assert order is not None
        return order

    def find_candidates(
        self,
        *,
        state: int,
        entered_before: datetime | None = None,
        condition: FilterExpression | None = None,
    ) -> list[Candidate]:
        sql = "SELECT o.id, o.current_state FROM orders o WHERE o.current_state = ?"
        params: list[RowValue] = [state]
        if entered_before is not None:
            # Latest entry into the state, not any historical one.
            sql += (
                " AND (SELECT MAX(h.created_at) FROM order_state_history h"
                " WHERE h.order_id = o.id AND h.state = ?) <= ?"
            )
            params.extend((state, to_iso8601z(entered_before)))
        if condition is not None:
            fragment, condition_params = compile_filter(condition, ORDER_FILTER_COLUMNS, alias="o")
            sql += f" AND {fragment}"
            params.extend(condition_params)
        sql += " ORDER BY o.id ASC"
        rows = self._db.query_all(sql, tuple(params))
        return [
            Candidate(
                id=_row_int(row, "id", "orders.id"),
                current_state=_row_int(row, "current_state", "orders.current_state"),
            )
            for row in rows
        ]

    def get(self, entity_id: int) -> Order | None:
        row = self._db.query_one("SELECT * FROM orders WHERE id = ?", (entity_id,))
        if row is None:
            return None
        total_paid = row.get("total_paid")
        customer_id = row.get("customer_id")
        return Order(
            id=_row_int(row, "id", "orders.id"),
            current_state=_row_int(row, "current_state", "orders.current_state"),
            reference=_row_optional_text(row, "reference"),
            total_paid=float(total_paid) if isinstance(total_paid, (int, float)) else None,
            payment_method=_row_optional_text(row, "payment_method"),
            carrier=_row_optional_text(row, "carrier"),
            customer_id=customer_id if isinstance(customer_id, int) else None,
            created_at=parse_datetime(row.get("created_at"), "orders.created_at"),
            updated_at=parse_datetime(row.get("updated_at"), "orders.updated_at"),
        )

    def transition(
        self,
        entity_id: int,
        *,
        from_state: int,
        to_state: int,
        rule_id: int | None,
        principal: str | None = None,
    ) -> None:
        now = to_iso8601z(self._clock())
        with self._db.transaction(immediate=True) as conn:
            updated = self._db.execute(
                """
                UPDATE orders SET current_state = ?, updated_at = ?
                WHERE id = ? AND current_state = ?
                """,
                (to_state, now, entity_id, from_state),
                conn=conn,
            )
            if updated != 1:
                raise ConcurrentTransitionError(entity_id, from_state)
            self._append_state_entry(conn, entity_id, to_state, principal=principal, at=now)
            self._db.execute(
                """
                INSERT INTO transition_history (
                    order_id, subject_type, from_state, to_state, rule_id, principal, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (entity_id, SUBJECT_ORDER, from_state, to_state, rule_id, principal, now),
                conn=conn,
            )

    def transition_history(self, entity_id: int) -> list[TransitionRecord]:
        rows = self._db.query_all(
            """
            SELECT id, order_id, from_state, to_state, rule_id, principal, created_at
            FROM transition_history WHERE order_id = ? ORDER BY id ASC
            """,
            (entity_id,),
        )
        records: list[TransitionRecord] = []
        for row in rows:
            from_state = row.get("from_state")
            rule_id = row.get("rule_id")
            records.append(
                TransitionRecord(
                    id=_row_int(row, "id", "transition_history.id"),
                    order_id=_row_int(row, "order_id", "transition_history.order_id"),
                    from_state=from_state if isinstance(from_state, int) else None,
                    to_state=_row_int(row, "to_state", "transition_history.to_state"),
                    rule_id=rule_id if isinstance(rule_id, int) else None,
                    principal=_row_optional_text(row, "principal"),
                    created_at=parse_datetime(
                        row.get("created_at"), "transition_history.created_at"
                    ),
                )
            )
        return records

    def _append_state_entry(
        self,
        conn: sqlite3.Connection,
        order_id: int,
        state: int,
        *,
        principal: str | None,
        at: str,
    ) -> None:
        self._db.execute(
            """
            INSERT INTO order_state_history (order_id, state, principal, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (order_id, state, principal, at),
            conn=conn,
        )


def _row_int(row: Mapping[str, RowValue], key: str, path: str) -> int:
    value = row.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{path}: expected integer value")
    return value


def _row_optional_text(row: Mapping[str, RowValue], key: str) -> str | None:
    value = row.get(key)
    return value if isinstance(value, str) else None


__all__ = [
    "ORDER_FILTER_COLUMNS",
    "EntityStore",
    "OrderStore",
    "TransitionRecord",
]
