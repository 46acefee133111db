"""
Eligibility selection for transition rules.

Given a rule, ask the entity store for entities currently in the rule's
source state, narrowed by:
- the delay window (latest entry into the source state at or before
  ``now - delay_hours``), applied only when ``delay_hours > 0``
- the rule's typed condition, when one is set

A subject-type filter other than the rule domain short-circuits to no
candidates without touching the store.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import structlog

from statusflow.constants import RULE_SUBJECT_DOMAIN
from statusflow.domain.filters import FilterError

if TYPE_CHECKING:
    from statusflow.domain.models import Candidate, Rule
    from statusflow.persistence.entity_store import EntityStore

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017


class EligibilitySelector:
    """Produce candidate entities for one rule."""

    def __init__(
        self,
        store: EntityStore,
        *,
        clock: Callable[[], datetime] | None = None,
        subject_domain: str = RULE_SUBJECT_DOMAIN,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self._subject_domain = subject_domain
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def cutoff_for(self, rule: Rule) -> datetime | None:
        if rule.delay_hours <= 0:
            return None
        return self._clock() - timedelta(hours=rule.delay_hours)

    def select_candidates(
        self,
        rule: Rule,
        subject_type_filter: str | None = None,
    ) -> list[Candidate]:
        if subject_type_filter is not None and subject_type_filter != self._subject_domain:
            self._logger.debug(
                "statusflow_selector_subject_skipped",
                rule_id=rule.id,
                subject_type=subject_type_filter,
            )
            return []

        if rule.condition_error is not None:
            raise FilterError(f"rule {rule.id} condition is unreadable: {rule.condition_error}")

        cutoff = self.cutoff_for(rule)
        candidates = self._store.find_candidates(
            state=rule.source_state,
            entered_before=cutoff,
            condition=rule.condition,
        )
        self._logger.debug(
            "statusflow_selector_candidates",
            rule_id=rule.id,
            source_state=rule.source_state,
            cutoff=None if cutoff is None else cutoff.isoformat(),
            has_condition=rule.condition is not None,
            candidate_count=len(candidates),
        )
        return candidates


__all__ = ["EligibilitySelector"]
