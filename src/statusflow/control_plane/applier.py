"""
Single-entity transition application.

Live path: refetch, skip when missing or already in the target state,
transition through the entity store, then audit the outcome. Dry-run path:
audit a simulation and report success without touching the store.

Store failures are reported as error-level audit events and folded into a
``FAILED`` outcome so the surrounding batch keeps going. The one exception
that escapes is :class:`AuditWriteError`: if the error event itself cannot be
written, the audit trail is gone and the run must stop.
"""

from __future__ import annotations

import traceback
from typing import TYPE_CHECKING, Any

import structlog

from statusflow.constants import SUBJECT_ORDER
from statusflow.domain.errors import AuditWriteError
from statusflow.domain.models import TransitionOutcome, TransitionResult

if TYPE_CHECKING:
    from statusflow.domain.models import Candidate
    from statusflow.observability.audit import AuditLog
    from statusflow.persistence.entity_store import EntityStore


class TransitionApplier:
    """Apply (or simulate) one candidate's move to a target state."""

    def __init__(
        self,
        store: EntityStore,
        audit: AuditLog,
        *,
        principal: str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._principal = principal
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def apply(
        self,
        candidate: Candidate,
        target_state: int,
        dry_run: bool,
        rule_id: int | None,
    ) -> bool:
        return self.apply_detailed(candidate, target_state, dry_run, rule_id).success

    def apply_detailed(
        self,
        candidate: Candidate,
        target_state: int,
        dry_run: bool,
        rule_id: int | None,
    ) -> TransitionResult:
        if dry_run:
            return self._simulate(candidate, target_state, rule_id)

        from_state = candidate.current_state
        try:
            order = self._store.get(candidate.id)
            if order is None:
                self._audit.warning(
                    "Order not found",
                    SUBJECT_ORDER,
                    candidate.id,
                    rule_id,
                    {"to_status": target_state},
                )
                return self._result(
                    TransitionOutcome.SKIPPED_NOT_FOUND, candidate, from_state, target_state
                )

            from_state = order.current_state
            if from_state == target_state:
                self._audit.info(
                    "Order already in target state",
                    SUBJECT_ORDER,
                    order.id,
                    rule_id,
                    {"current_status": from_state, "target_status": target_state},
                )
                return self._result(
                    TransitionOutcome.SKIPPED_ALREADY_IN_TARGET,
                    candidate,
                    from_state,
                    target_state,
                )

            self._store.transition(
                order.id,
                from_state=from_state,
                to_state=target_state,
                rule_id=rule_id,
                principal=self._principal,
            )
        except AuditWriteError:
            raise
        except Exception as exc:
            self._audit.error(
                f"Error updating order status: {exc}",
                SUBJECT_ORDER,
                candidate.id,
                rule_id,
                {
                    "from_status": from_state,
                    "to_status": target_state,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                    "trace": traceback.format_exc(),
                },
            )
            return self._result(
                TransitionOutcome.FAILED,
                candidate,
                from_state,
                target_state,
                reason=str(exc),
            )

        self._audit.info(
            f"Status changed from {from_state} to {target_state}",
            SUBJECT_ORDER,
            order.id,
            rule_id,
            {"from_status": from_state, "to_status": target_state, "reference": order.reference},
        )
        return self._result(TransitionOutcome.APPLIED, candidate, from_state, target_state)

    def _simulate(
        self,
        candidate: Candidate,
        target_state: int,
        rule_id: int | None,
    ) -> TransitionResult:
        self._audit.info(
            f"Simulated status change from {candidate.current_state} to {target_state}",
            SUBJECT_ORDER,
            candidate.id,
            rule_id,
            {
                "from_status": candidate.current_state,
                "to_status": target_state,
                "dry_run": True,
            },
        )
        return self._result(
            TransitionOutcome.SIMULATED_APPLIED,
            candidate,
            candidate.current_state,
            target_state,
        )

    def _result(
        self,
        outcome: TransitionOutcome,
        candidate: Candidate,
        from_state: int,
        to_state: int,
        *,
        reason: str | None = None,
    ) -> TransitionResult:
        self._logger.info(
            "statusflow_transition",
            outcome=outcome.value,
            order_id=candidate.id,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
        )
        return TransitionResult(
            outcome=outcome,
            candidate_id=candidate.id,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
        )


__all__ = ["TransitionApplier"]
