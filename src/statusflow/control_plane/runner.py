"""
Invocation surface for schedulers and the CLI.

``run`` wires one engine over one state DB and processes rules once;
``clean_audit_log`` applies the retention window. Both take the effective
:class:`RuntimeSettings` explicitly.
"""

from __future__ import annotations

import os
import socket
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from statusflow.constants import DEFAULT_RETENTION_DAYS, MIN_RETENTION_DAYS, RUN_LOCK_NAME
from statusflow.control_plane.applier import TransitionApplier
from statusflow.control_plane.processor import RuleProcessor
from statusflow.control_plane.selector import EligibilitySelector
from statusflow.domain.errors import RunLockedError
from statusflow.observability.audit import AuditLog
from statusflow.persistence.entity_store import OrderStore
from statusflow.persistence.repositories import AuditEventRepo, RuleRepo, RunLockRepo
from statusflow.persistence.state_db import StateDB

if TYPE_CHECKING:
    from statusflow.config.loader import RuntimeSettings

Clock = Callable[[], datetime]

_LOGGER = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Engine:
    """The wired component graph for one state DB."""

    db: StateDB
    rules: RuleRepo
    orders: OrderStore
    audit: AuditLog
    selector: EligibilitySelector
    applier: TransitionApplier
    processor: RuleProcessor


def build_engine(
    db: StateDB,
    settings: RuntimeSettings,
    *,
    clock: Clock | None = None,
) -> Engine:
    rules = RuleRepo(db, clock=clock)
    orders = OrderStore(db, clock=clock)
    audit = AuditLog(
        AuditEventRepo(db, clock=clock),
        retention_days=settings.retention_days,
        db_logging_enabled=settings.db_logging_enabled,
    )
    selector = EligibilitySelector(orders, clock=clock)
    applier = TransitionApplier(orders, audit)
    processor = RuleProcessor(rules, selector, applier, audit, batch_size=settings.batch_size)
    return Engine(
        db=db,
        rules=rules,
        orders=orders,
        audit=audit,
        selector=selector,
        applier=applier,
        processor=processor,
    )


def run(
    settings: RuntimeSettings,
    subject_type_filter: str | None = None,
    dry_run: bool = False,
    rule_id: int | None = None,
    *,
    lock: bool = False,
    clock: Clock | None = None,
) -> int:
    """Process rules once and return the applied (or would-be-applied) count.

    Raises :class:`ProcessingError` on a run-level failure and
    :class:`RunLockedError` when ``lock`` is set and another run holds it.
    """

    db = StateDB(settings.state_db)
    engine = build_engine(db, settings, clock=clock)
    if not lock:
        return engine.processor.process_rules(subject_type_filter, dry_run, rule_id)

    locks = RunLockRepo(db, clock=clock)
    owner = f"{socket.gethostname()}:{os.getpid()}"
    if not locks.acquire(RUN_LOCK_NAME, owner, lease_seconds=settings.lock_lease_seconds):
        holder = locks.holder(RUN_LOCK_NAME)
        raise RunLockedError(f"another run holds {RUN_LOCK_NAME!r} (owner: {holder})")
    _LOGGER.info("statusflow_run_lock_acquired", owner=owner)
    try:
        return engine.processor.process_rules(subject_type_filter, dry_run, rule_id)
    finally:
        locks.release(RUN_LOCK_NAME, owner)
        _LOGGER.info("statusflow_run_lock_released", owner=owner)


def effective_retention_days(days: int | None, configured: int) -> int:
    """Override if positive, else configured if positive, else the default; never below 1."""

    if days is not None and days > 0:
        chosen = days
    elif configured > 0:
        chosen = configured
    else:
        chosen = DEFAULT_RETENTION_DAYS
    return max(MIN_RETENTION_DAYS, chosen)


def clean_audit_log(
    settings: RuntimeSettings,
    days: int | None = None,
    *,
    clock: Clock | None = None,
) -> int:
    retention = effective_retention_days(days, settings.retention_days)
    audit = AuditLog(
        AuditEventRepo(StateDB(settings.state_db), clock=clock),
        retention_days=settings.retention_days,
        db_logging_enabled=settings.db_logging_enabled,
    )
    deleted = audit.clean_old_events(retention)
    _LOGGER.info("statusflow_audit_cleaned", deleted=deleted, retention_days=retention)
    return deleted


__all__ = [
    "Engine",
    "build_engine",
    "clean_audit_log",
    "effective_retention_days",
    "run",
]
