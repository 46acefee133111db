"""Dataclass domain models for rules, candidates, outcomes, and audit events."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, NoReturn

from statusflow.domain.filters import FilterExpression, to_mapping

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

if TYPE_CHECKING:
    from enum import StrEnum
else:
    try:
        from enum import StrEnum
    except ImportError:

        class StrEnum(str, Enum):
            """Compatibility fallback for Python < 3.11."""


JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_TEXT = 8192
_MAX_JSON_DEPTH = 16


class AuditLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class TransitionOutcome(StrEnum):
    APPLIED = "applied"
    SKIPPED_ALREADY_IN_TARGET = "skipped_already_in_target"
    SKIPPED_NOT_FOUND = "skipped_not_found"
    SIMULATED_APPLIED = "simulated_applied"
    FAILED = "failed"


_SUCCESS_OUTCOMES = frozenset({TransitionOutcome.APPLIED, TransitionOutcome.SIMULATED_APPLIED})


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must be at least 1 character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed
    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


def datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_datetime(value: object, path: str = "datetime") -> datetime:
    return _as_datetime(value, path)


@dataclass(frozen=True, slots=True)
class Rule:
    """Snapshot of one transition rule, read once per run."""

    id: int
    source_state: int
    target_state: int
    delay_hours: int = 0
    condition: FilterExpression | None = None
    auto_execute: bool = False
    active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # Set when the stored condition could not be read; such a rule selects nothing.
    condition_error: str | None = None

    def __post_init__(self) -> None:
        _as_int(self.id, "Rule.id", minimum=1)
        _as_int(self.source_state, "Rule.source_state", minimum=1)
        _as_int(self.target_state, "Rule.target_state", minimum=1)
        _as_int(self.delay_hours, "Rule.delay_hours", minimum=0)
        _as_bool(self.auto_execute, "Rule.auto_execute")
        _as_bool(self.active, "Rule.active")
        if self.created_at is not None:
            object.__setattr__(self, "created_at", _as_datetime(self.created_at, "Rule.created_at"))
        if self.updated_at is not None:
            object.__setattr__(self, "updated_at", _as_datetime(self.updated_at, "Rule.updated_at"))

    @property
    def is_self_loop(self) -> bool:
        return self.source_state == self.target_state

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "id": self.id,
            "source_state": self.source_state,
            "target_state": self.target_state,
            "delay_hours": self.delay_hours,
            "condition": (
                None
                if self.condition is None
                else as_json_object(to_mapping(self.condition), "Rule.condition")
            ),
            "auto_execute": self.auto_execute,
            "active": self.active,
            "created_at": (
                None if self.created_at is None else datetime_to_iso8601z(self.created_at)
            ),
            "updated_at": (
                None if self.updated_at is None else datetime_to_iso8601z(self.updated_at)
            ),
        }
        if self.condition_error is not None:
            payload["condition_error"] = self.condition_error
        return payload


@dataclass(frozen=True, slots=True)
class Candidate:
    id: int
    current_state: int


@dataclass(frozen=True, slots=True)
class Order:
    """Entity view returned by the order store's fetch-by-id."""

    id: int
    current_state: int
    reference: str | None = None
    total_paid: float | None = None
    payment_method: str | None = None
    carrier: str | None = None
    customer_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "current_state": self.current_state,
            "reference": self.reference,
            "total_paid": self.total_paid,
            "payment_method": self.payment_method,
            "carrier": self.carrier,
            "customer_id": self.customer_id,
            "created_at": (
                None if self.created_at is None else datetime_to_iso8601z(self.created_at)
            ),
            "updated_at": (
                None if self.updated_at is None else datetime_to_iso8601z(self.updated_at)
            ),
        }


@dataclass(frozen=True, slots=True)
class OrderState:
    id: int
    name: str

    def __post_init__(self) -> None:
        _as_int(self.id, "OrderState.id", minimum=1)
        object.__setattr__(self, "name", _as_str(self.name, "OrderState.name", max_len=128))


@dataclass(frozen=True, slots=True)
class TransitionResult:
    outcome: TransitionOutcome
    candidate_id: int
    from_state: int | None = None
    to_state: int | None = None
    reason: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome in _SUCCESS_OUTCOMES


@dataclass(frozen=True, slots=True)
class AuditEvent:
    id: int
    level: AuditLevel
    message: str
    subject_type: str
    subject_id: int
    created_at: datetime
    rule_id: int | None = None
    context: dict[str, JSONValue] | None = None
    rule_source_state: int | None = None
    rule_target_state: int | None = None

    def __post_init__(self) -> None:
        _as_int(self.id, "AuditEvent.id", minimum=1)
        object.__setattr__(self, "level", AuditLevel(self.level))
        created_at = _as_datetime(self.created_at, "AuditEvent.created_at")
        object.__setattr__(self, "created_at", created_at)

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {
            "id": self.id,
            "level": self.level.value,
            "message": self.message,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "rule_id": self.rule_id,
            "context": self.context,
            "created_at": datetime_to_iso8601z(self.created_at),
        }
        if self.rule_source_state is not None or self.rule_target_state is not None:
            out["rule_source_state"] = self.rule_source_state
            out["rule_target_state"] = self.rule_target_state
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True, slots=True)
class ProcessRun:
    subject_type_filter: str | None = None
    dry_run: bool = False
    rule_id: int | None = None

    def as_context(self) -> dict[str, JSONValue]:
        return {"dry_run": self.dry_run, "subject_type": self.subject_type_filter}


@dataclass(slots=True)
class RuleTally:
    """Per-rule counters accumulated while candidates are applied."""

    rule_id: int
    eligible: int = 0
    applied: int = 0
    outcomes: dict[TransitionOutcome, int] = field(default_factory=dict)
    error: str | None = None

    def record(self, result: TransitionResult) -> None:
        self.outcomes[result.outcome] = self.outcomes.get(result.outcome, 0) + 1
        if result.success:
            self.applied += 1

    def outcome_counts(self) -> dict[str, JSONValue]:
        return {outcome.value: count for outcome, count in sorted(self.outcomes.items())}


__all__ = [
    "AuditEvent",
    "AuditLevel",
    "Candidate",
    "JSONScalar",
    "JSONValue",
    "Order",
    "OrderState",
    "ProcessRun",
    "Rule",
    "RuleTally",
    "TransitionOutcome",
    "TransitionResult",
    "as_json_object",
    "datetime_to_iso8601z",
    "parse_datetime",
]
