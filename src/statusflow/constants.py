"""Stable constants shared across statusflow layers."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 2

# Subject types recorded on audit events.
SUBJECT_ORDER: Final[str] = "order"
SUBJECT_RULE: Final[str] = "rule"
SUBJECT_SYSTEM: Final[str] = "system"

# Rules only ever target orders.
RULE_SUBJECT_DOMAIN: Final[str] = SUBJECT_ORDER

# Audit retention.
DEFAULT_RETENTION_DAYS: Final[int] = 30
MIN_RETENTION_DAYS: Final[int] = 1

# Engine defaults.
DEFAULT_BATCH_SIZE: Final[int] = 50
DEFAULT_LOCK_LEASE_SECONDS: Final[int] = 3_600
RUN_LOCK_NAME: Final[str] = "statusflow.process"

# Audit query paging.
DEFAULT_AUDIT_PAGE_SIZE: Final[int] = 50
MAX_PAGE_SIZE: Final[int] = 1_000

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_AUDIT_PAGE_SIZE",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_LOCK_LEASE_SECONDS",
    "DEFAULT_RETENTION_DAYS",
    "MAX_PAGE_SIZE",
    "MIN_RETENTION_DAYS",
    "RULE_SUBJECT_DOMAIN",
    "RUN_LOCK_NAME",
    "STATE_DB_SCHEMA_VERSION",
    "SUBJECT_ORDER",
    "SUBJECT_RULE",
    "SUBJECT_SYSTEM",
]
