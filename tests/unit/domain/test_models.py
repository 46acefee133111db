"""Unit tests for rule, outcome, and audit event models."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from statusflow.domain.filters import parse_filter
from statusflow.domain.models import (
    AuditEvent,
    AuditLevel,
    OrderState,
    ProcessRun,
    Rule,
    RuleTally,
    TransitionOutcome,
    TransitionResult,
    as_json_object,
    datetime_to_iso8601z,
    parse_datetime,
)

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017


@pytest.mark.unit
def test_rule_validates_ids_and_delay() -> None:
    with pytest.raises(ValueError, match=r"Rule.source_state: must be >= 1"):
        Rule(id=1, source_state=0, target_state=3)
    with pytest.raises(ValueError, match=r"Rule.delay_hours: must be >= 0"):
        Rule(id=1, source_state=2, target_state=3, delay_hours=-1)
    with pytest.raises(ValueError, match=r"Rule.auto_execute: expected boolean"):
        Rule(id=1, source_state=2, target_state=3, auto_execute=1)  # type: ignore[arg-type]


@pytest.mark.unit
def test_rule_self_loop_and_serialization() -> None:
    created = datetime(2026, 2, 1, 12, 0, tzinfo=UTC)
    rule = Rule(
        id=4,
        source_state=5,
        target_state=5,
        delay_hours=24,
        condition=parse_filter({"field": "carrier", "op": "eq", "value": "dhl"}),
        auto_execute=True,
        created_at=created,
    )

    assert rule.is_self_loop is True
    assert Rule(id=5, source_state=2, target_state=3).is_self_loop is False
    assert rule.to_dict() == {
        "id": 4,
        "source_state": 5,
        "target_state": 5,
        "delay_hours": 24,
        "condition": {"field": "carrier", "op": "eq", "value": "dhl"},
        "auto_execute": True,
        "active": True,
        "created_at": "2026-02-01T12:00:00.000000Z",
        "updated_at": None,
    }


@pytest.mark.unit
def test_datetimes_normalize_to_utc_and_reject_naive() -> None:
    plus_two = datetime(2026, 2, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

    assert datetime_to_iso8601z(plus_two) == "2026-02-01T12:00:00.000000Z"
    assert parse_datetime("2026-02-01T12:00:00Z") == datetime(2026, 2, 1, 12, 0, tzinfo=UTC)
    with pytest.raises(ValueError, match="timezone-aware"):
        parse_datetime(datetime(2026, 2, 1, 12, 0))
    with pytest.raises(ValueError, match="invalid ISO-8601"):
        parse_datetime("yesterday", "orders.created_at")


@pytest.mark.unit
def test_transition_result_success_covers_simulated_applies() -> None:
    assert TransitionResult(TransitionOutcome.APPLIED, 1).success
    assert TransitionResult(TransitionOutcome.SIMULATED_APPLIED, 1).success
    assert not TransitionResult(TransitionOutcome.SKIPPED_NOT_FOUND, 1).success
    assert not TransitionResult(TransitionOutcome.FAILED, 1, reason="boom").success


@pytest.mark.unit
def test_rule_tally_counts_outcomes_and_applies() -> None:
    tally = RuleTally(rule_id=3, eligible=4)
    for outcome in (
        TransitionOutcome.APPLIED,
        TransitionOutcome.APPLIED,
        TransitionOutcome.SKIPPED_ALREADY_IN_TARGET,
        TransitionOutcome.FAILED,
    ):
        tally.record(TransitionResult(outcome, 1))

    assert tally.applied == 2
    assert tally.outcome_counts() == {
        "applied": 2,
        "failed": 1,
        "skipped_already_in_target": 1,
    }


@pytest.mark.unit
def test_audit_event_to_dict_includes_rule_info_only_when_joined() -> None:
    event = AuditEvent(
        id=9,
        level="warning",  # type: ignore[arg-type]
        message="Order not found",
        subject_type="order",
        subject_id=42,
        created_at="2026-02-01T12:00:00.500000Z",  # type: ignore[arg-type]
        rule_id=3,
        context={"rule_id": 3},
    )
    joined = AuditEvent(
        id=10,
        level=AuditLevel.INFO,
        message="ok",
        subject_type="rule",
        subject_id=3,
        created_at=datetime(2026, 2, 1, tzinfo=UTC),
        rule_id=3,
        rule_source_state=2,
        rule_target_state=3,
    )

    assert event.level is AuditLevel.WARNING
    assert event.to_dict()["created_at"] == "2026-02-01T12:00:00.500000Z"
    assert "rule_source_state" not in event.to_dict()
    assert joined.to_dict()["rule_source_state"] == 2
    assert event.to_json().startswith('{"context":{"rule_id":3},"created_at":')

    with pytest.raises(ValueError):
        AuditEvent(
            id=1,
            level="debug",  # type: ignore[arg-type]
            message="x",
            subject_type="system",
            subject_id=0,
            created_at=datetime(2026, 2, 1, tzinfo=UTC),
        )


@pytest.mark.unit
def test_json_object_and_small_models() -> None:
    assert as_json_object({"a": [1, 2.5, None, {"b": True}]}, "ctx") == {
        "a": [1, 2.5, None, {"b": True}]
    }
    with pytest.raises(ValueError, match="ctx: expected JSON object"):
        as_json_object([1], "ctx")
    with pytest.raises(ValueError, match="not JSON-serializable"):
        as_json_object({"when": object()}, "ctx")

    assert OrderState(id=2, name="  Payment accepted ").name == "Payment accepted"
    assert ProcessRun(subject_type_filter="order", dry_run=True).as_context() == {
        "dry_run": True,
        "subject_type": "order",
    }
