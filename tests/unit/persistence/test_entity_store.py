"""Order store: candidate queries, delay windows, conditions, and guarded transitions."""

from __future__ import annotations

import sqlite3
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from statusflow.domain.errors import ConcurrentTransitionError
from statusflow.domain.filters import FilterError
from statusflow.persistence.entity_store import OrderStore

from . import FrozenClock, condition, fixed_now, make_db, seed_order

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.unit
def test_find_candidates_by_state_in_id_order(tmp_path: Path) -> None:
    store = OrderStore(make_db(tmp_path), clock=FrozenClock())
    for order_id, state in ((5, 2), (3, 2), (4, 3)):
        seed_order(store, order_id, state)

    candidates = store.find_candidates(state=2)

    assert [(c.id, c.current_state) for c in candidates] == [(3, 2), (5, 2)]


@pytest.mark.unit
def test_delay_window_boundary_is_inclusive(tmp_path: Path) -> None:
    clock = FrozenClock()
    store = OrderStore(make_db(tmp_path), clock=clock)
    cutoff = clock() - timedelta(hours=48)
    seed_order(store, 1, 2, entered_at=cutoff)
    seed_order(store, 2, 2, entered_at=cutoff + timedelta(seconds=1))
    seed_order(store, 3, 2, entered_at=cutoff - timedelta(seconds=1))

    eligible = store.find_candidates(state=2, entered_before=cutoff)

    assert [c.id for c in eligible] == [1, 3]


@pytest.mark.unit
def test_delay_uses_latest_entry_into_state(tmp_path: Path) -> None:
    clock = FrozenClock(fixed_now(-100))
    store = OrderStore(make_db(tmp_path), clock=clock)
    seed_order(store, 1, 2)

    clock.now = fixed_now(-90)
    store.transition(1, from_state=2, to_state=4, rule_id=None)
    clock.now = fixed_now(-1)
    store.transition(1, from_state=4, to_state=2, rule_id=None)

    assert store.find_candidates(state=2, entered_before=fixed_now(-48)) == []
    assert [c.id for c in store.find_candidates(state=2, entered_before=fixed_now())] == [1]


@pytest.mark.unit
def test_condition_narrows_candidates(tmp_path: Path) -> None:
    store = OrderStore(make_db(tmp_path), clock=FrozenClock())
    seed_order(store, 1, 2, carrier="dhl", total_paid=10.0)
    seed_order(store, 2, 2, carrier="ups", total_paid=80.0)
    seed_order(store, 3, 2, carrier="dhl", total_paid=120.0)
    seed_order(store, 4, 2, carrier=None, total_paid=5.0)

    dhl_and_large = condition(
        {
            "all": [
                {"field": "carrier", "op": "eq", "value": "dhl"},
                {"field": "total_paid", "op": "ge", "value": 100},
            ]
        }
    )
    not_ups = condition({"not": {"field": "carrier", "op": "in", "value": ["ups"]}})
    missing_carrier = condition({"field": "carrier", "op": "is_null"})

    assert [c.id for c in store.find_candidates(state=2, condition=dhl_and_large)] == [3]
    # SQL three-valued logic: NOT IN never matches NULL.
    assert [c.id for c in store.find_candidates(state=2, condition=not_ups)] == [1, 3]
    assert [c.id for c in store.find_candidates(state=2, condition=missing_carrier)] == [4]


@pytest.mark.unit
def test_condition_with_unknown_field_is_rejected(tmp_path: Path) -> None:
    store = OrderStore(make_db(tmp_path), clock=FrozenClock())
    seed_order(store, 1, 2)

    with pytest.raises(FilterError, match="unknown filter field"):
        store.find_candidates(
            state=2,
            condition=condition({"field": "password", "op": "eq", "value": "x"}),
        )


@pytest.mark.unit
def test_transition_updates_state_and_appends_history(tmp_path: Path) -> None:
    clock = FrozenClock()
    store = OrderStore(make_db(tmp_path), clock=clock)
    seed_order(store, 7, 2, entered_at=fixed_now(-72))

    clock.advance(minutes=5)
    store.transition(7, from_state=2, to_state=3, rule_id=11, principal="statusflow")

    order = store.get(7)
    assert order is not None
    assert order.current_state == 3
    assert order.updated_at == fixed_now() + timedelta(minutes=5)

    history = store.transition_history(7)
    assert len(history) == 1
    record = history[0]
    assert (record.from_state, record.to_state, record.rule_id) == (2, 3, 11)
    assert record.principal == "statusflow"
    assert record.created_at == clock()


@pytest.mark.unit
def test_transition_compare_and_set_rejects_stale_source(tmp_path: Path) -> None:
    store = OrderStore(make_db(tmp_path), clock=FrozenClock())
    seed_order(store, 7, 3)

    with pytest.raises(ConcurrentTransitionError) as excinfo:
        store.transition(7, from_state=2, to_state=4, rule_id=1)

    assert excinfo.value.order_id == 7
    assert store.get(7).current_state == 3  # type: ignore[union-attr]
    assert store.transition_history(7) == []


@pytest.mark.unit
def test_add_order_rejects_duplicates_and_invalid_ids(tmp_path: Path) -> None:
    store = OrderStore(make_db(tmp_path), clock=FrozenClock())
    seed_order(store, 1, 2)

    with pytest.raises(sqlite3.IntegrityError):
        seed_order(store, 1, 2)
    with pytest.raises(ValueError, match="order_id"):
        seed_order(store, 0, 2)
    assert store.get(999) is None
