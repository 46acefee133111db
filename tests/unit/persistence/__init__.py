"""Shared deterministic fixtures and builders for persistence and engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Final

from statusflow.config.loader import RuntimeSettings
from statusflow.domain.filters import FilterExpression, parse_filter
from statusflow.domain.models import Order, Rule
from statusflow.persistence.entity_store import OrderStore
from statusflow.persistence.repositories import RuleRepo
from statusflow.persistence.state_db import StateDB

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

_BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def fixed_now(hours: float = 0) -> datetime:
    """Deterministic UTC instant ``hours`` after the shared base timestamp."""

    return _BASE_TS + timedelta(hours=hours)


class FrozenClock:
    """Injectable clock; tests move it explicitly."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = _BASE_TS if now is None else now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


def make_db(tmp_path: Path) -> StateDB:
    db = StateDB(tmp_path / "state" / "statusflow.sqlite3")
    db.migrate()
    return db


def make_settings(tmp_path: Path, **overrides: object) -> RuntimeSettings:
    values: dict[str, object] = {
        "state_db": tmp_path / "state" / "statusflow.sqlite3",
        "log_dir": tmp_path / "logs",
        "retention_days": 30,
        "db_logging_enabled": True,
        "batch_size": 50,
        "lock_lease_seconds": 3_600,
        "dry_run_default": False,
        "log_level": "INFO",
        "redact_secrets": True,
    }
    values.update(overrides)
    return RuntimeSettings(**values)  # type: ignore[arg-type]


def condition(data: dict[str, object]) -> FilterExpression:
    return parse_filter(data)


def make_rule(
    repo: RuleRepo,
    *,
    source_state: int = 2,
    target_state: int = 3,
    delay_hours: int = 0,
    condition: FilterExpression | None = None,
    auto_execute: bool = True,
    active: bool = True,
) -> Rule:
    return repo.create(
        source_state=source_state,
        target_state=target_state,
        delay_hours=delay_hours,
        condition=condition,
        auto_execute=auto_execute,
        active=active,
    )


def seed_order(
    store: OrderStore,
    order_id: int,
    state: int,
    *,
    entered_at: datetime | None = None,
    reference: str | None = None,
    total_paid: float | None = None,
    payment_method: str | None = None,
    carrier: str | None = None,
) -> Order:
    return store.add_order(
        order_id,
        state,
        reference=reference if reference is not None else f"REF{order_id:05d}",
        total_paid=total_paid,
        payment_method=payment_method,
        carrier=carrier,
        entered_at=entered_at,
    )


__all__ = [
    "FrozenClock",
    "condition",
    "fixed_now",
    "make_db",
    "make_rule",
    "make_settings",
    "seed_order",
]
