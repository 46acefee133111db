"""Eligibility selection: delay cutoffs and subject-type short-circuit."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import pytest
from structlog.testing import CapturingLogger

from statusflow.control_plane.selector import EligibilitySelector
from statusflow.domain.filters import FilterExpression, parse_filter
from statusflow.domain.models import Candidate, Order, Rule
from tests.unit.persistence import FrozenClock, fixed_now


class RecordingStore:
    def __init__(self, candidates: list[Candidate]) -> None:
        self.candidates = candidates
        self.calls: list[dict[str, Any]] = []

    def find_candidates(
        self,
        *,
        state: int,
        entered_before: datetime | None = None,
        condition: FilterExpression | None = None,
    ) -> list[Candidate]:
        self.calls.append(
            {"state": state, "entered_before": entered_before, "condition": condition}
        )
        return list(self.candidates)

    def get(self, entity_id: int) -> Order | None:
        raise AssertionError("selector must not fetch entities")

    def transition(self, entity_id: int, **kwargs: object) -> None:
        raise AssertionError("selector must not transition entities")


@pytest.mark.unit
def test_delay_rule_passes_cutoff_and_condition() -> None:
    store = RecordingStore([Candidate(id=4, current_state=2)])
    expr = parse_filter({"field": "payment_method", "op": "eq", "value": "cheque"})
    selector = EligibilitySelector(store, clock=FrozenClock(), logger=CapturingLogger())
    rule = Rule(id=1, source_state=2, target_state=3, delay_hours=48, condition=expr)

    candidates = selector.select_candidates(rule)

    assert candidates == [Candidate(id=4, current_state=2)]
    assert store.calls == [
        {"state": 2, "entered_before": fixed_now() - timedelta(hours=48), "condition": expr}
    ]


@pytest.mark.unit
def test_zero_delay_has_no_cutoff() -> None:
    store = RecordingStore([])
    selector = EligibilitySelector(store, clock=FrozenClock(), logger=CapturingLogger())
    rule = Rule(id=1, source_state=2, target_state=3)

    assert selector.cutoff_for(rule) is None
    assert selector.select_candidates(rule, "order") == []
    assert store.calls[0]["entered_before"] is None


@pytest.mark.unit
def test_foreign_subject_type_short_circuits_without_querying() -> None:
    store = RecordingStore([Candidate(id=1, current_state=2)])
    logger = CapturingLogger()
    selector = EligibilitySelector(store, clock=FrozenClock(), logger=logger)

    assert selector.select_candidates(Rule(id=7, source_state=2, target_state=3), "product") == []
    assert store.calls == []
    assert logger.calls[0].args == ("statusflow_selector_subject_skipped",)
    assert logger.calls[0].kwargs == {"rule_id": 7, "subject_type": "product"}
