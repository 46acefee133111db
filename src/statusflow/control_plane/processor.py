"""
Rule processing orchestration.

:class:`RuleProcessor` loads the applicable rules, selects candidates for
each one, drives the applier candidate by candidate, and writes audit
summaries per rule and per run.

Failure isolation:
- a candidate failure is logged and the remaining candidates still run
- a rule whose candidates cannot be selected (bad condition, store error)
  gets one error event and the remaining rules still run
- an unexpected run-level failure is audited once and re-raised as
  :class:`ProcessingError`
- :class:`AuditWriteError` is never absorbed below the run level
"""

from __future__ import annotations

import traceback
from typing import TYPE_CHECKING, Any

import structlog

from statusflow.constants import SUBJECT_ORDER, SUBJECT_RULE, SUBJECT_SYSTEM
from statusflow.domain.errors import AuditWriteError, ProcessingError
from statusflow.domain.models import (
    ProcessRun,
    RuleTally,
    TransitionOutcome,
    TransitionResult,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from statusflow.control_plane.applier import TransitionApplier
    from statusflow.control_plane.selector import EligibilitySelector
    from statusflow.domain.models import Candidate, Rule
    from statusflow.observability.audit import AuditLog
    from statusflow.persistence.repositories import RuleRepo


class RuleProcessor:
    """Evaluate rules and apply their transitions sequentially."""

    def __init__(
        self,
        rules: RuleRepo,
        selector: EligibilitySelector,
        applier: TransitionApplier,
        audit: AuditLog,
        *,
        batch_size: int = 0,
        logger: Any | None = None,
    ) -> None:
        if batch_size < 0:
            raise ValueError("batch_size must be >= 0")
        self._rules = rules
        self._selector = selector
        self._applier = applier
        self._audit = audit
        self._batch_size = batch_size
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._tallies: list[RuleTally] = []

    @property
    def tallies(self) -> tuple[RuleTally, ...]:
        """Per-rule counters of the most recent ``process_rules`` call."""
        return tuple(self._tallies)

    def process_rules(
        self,
        subject_type_filter: str | None = None,
        dry_run: bool = False,
        rule_id: int | None = None,
    ) -> int:
        run = ProcessRun(subject_type_filter=subject_type_filter, dry_run=dry_run, rule_id=rule_id)
        self._tallies = []
        try:
            return self._process_run(run)
        except Exception as exc:
            self._report_run_failure(run, exc)
            raise ProcessingError(f"Error processing status flow rules: {exc}") from exc

    def process_rule(
        self,
        rule: Rule,
        subject_type_filter: str | None = None,
        dry_run: bool = False,
    ) -> int:
        tally = RuleTally(rule_id=rule.id)
        self._tallies.append(tally)
        if rule.is_self_loop:
            self._logger.warning(
                "statusflow_rule_self_loop",
                rule_id=rule.id,
                state=rule.source_state,
            )

        try:
            candidates = self._selector.select_candidates(rule, subject_type_filter)
        except AuditWriteError:
            raise
        except Exception as exc:
            tally.error = str(exc)
            self._report_rule_failure(rule, exc, dry_run)
            return 0
        tally.eligible = len(candidates)
        if not candidates:
            self._audit.info(
                "No eligible objects found for this rule",
                SUBJECT_RULE,
                rule.id,
                rule.id,
                {
                    "from_status": rule.source_state,
                    "to_status": rule.target_state,
                    "dry_run": dry_run,
                },
            )
            return 0

        for batch_number, batch in enumerate(self._batches(candidates), start=1):
            self._logger.debug(
                "statusflow_rule_batch",
                rule_id=rule.id,
                batch=batch_number,
                size=len(batch),
            )
            for candidate in batch:
                tally.record(self._apply_isolated(rule, candidate, dry_run))

        self._audit.info(
            f"Rule processed {tally.applied} status transitions",
            SUBJECT_RULE,
            rule.id,
            rule.id,
            {
                "from_status": rule.source_state,
                "to_status": rule.target_state,
                "eligible_objects": tally.eligible,
                "applied": tally.applied,
                "outcomes": tally.outcome_counts(),
                "dry_run": dry_run,
            },
        )
        self._logger.info(
            "statusflow_rule_processed",
            rule_id=rule.id,
            eligible=tally.eligible,
            applied=tally.applied,
            dry_run=dry_run,
        )
        return tally.applied

    def _process_run(self, run: ProcessRun) -> int:
        rules = self._load_rules(run.rule_id)
        self._logger.info(
            "statusflow_run_start",
            rule_count=len(rules),
            rule_id=run.rule_id,
            subject_type=run.subject_type_filter,
            dry_run=run.dry_run,
        )
        if not rules:
            self._audit.warning(
                "No active rules found for processing",
                SUBJECT_SYSTEM,
                0,
                run.rule_id,
                {"rule_id": run.rule_id, **run.as_context()},
            )
            return 0

        total = 0
        for rule in rules:
            total += self.process_rule(rule, run.subject_type_filter, run.dry_run)

        self._audit.info(
            f"Processed {total} status transitions",
            SUBJECT_SYSTEM,
            0,
            run.rule_id,
            {"applied": total, **run.as_context()},
        )
        self._logger.info("statusflow_run_complete", applied=total, dry_run=run.dry_run)
        return total

    def _load_rules(self, rule_id: int | None) -> list[Rule]:
        if rule_id is not None:
            return self._rules.get_active_rules(rule_id)
        return self._rules.get_auto_execute_rules()

    def _batches(self, candidates: Sequence[Candidate]) -> list[Sequence[Candidate]]:
        if self._batch_size <= 0:
            return [candidates]
        return [
            candidates[start : start + self._batch_size]
            for start in range(0, len(candidates), self._batch_size)
        ]

    def _apply_isolated(self, rule: Rule, candidate: Candidate, dry_run: bool) -> TransitionResult:
        try:
            return self._applier.apply_detailed(candidate, rule.target_state, dry_run, rule.id)
        except AuditWriteError:
            raise
        except Exception as exc:
            self._logger.error(
                "statusflow_candidate_failed",
                rule_id=rule.id,
                order_id=candidate.id,
                error=str(exc),
            )
            self._audit.error(
                f"Error updating order status: {exc}",
                SUBJECT_ORDER,
                candidate.id,
                rule.id,
                {
                    "from_status": candidate.current_state,
                    "to_status": rule.target_state,
                    "error": str(exc),
                    "trace": traceback.format_exc(),
                },
            )
            return TransitionResult(
                outcome=TransitionOutcome.FAILED,
                candidate_id=candidate.id,
                from_state=candidate.current_state,
                to_state=rule.target_state,
                reason=str(exc),
            )

    def _report_rule_failure(self, rule: Rule, exc: Exception, dry_run: bool) -> None:
        self._logger.error(
            "statusflow_rule_failed",
            rule_id=rule.id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        self._audit.error(
            f"Error processing rule: {exc}",
            SUBJECT_RULE,
            rule.id,
            rule.id,
            {
                "from_status": rule.source_state,
                "to_status": rule.target_state,
                "error": str(exc),
                "error_type": type(exc).__name__,
                "trace": "".join(traceback.format_exception(exc)),
                "dry_run": dry_run,
            },
        )

    def _report_run_failure(self, run: ProcessRun, exc: Exception) -> None:
        self._logger.error(
            "statusflow_run_failed",
            error=str(exc),
            error_type=type(exc).__name__,
            rule_id=run.rule_id,
        )
        context: dict[str, object] = {
            "error": str(exc),
            "error_type": type(exc).__name__,
            "trace": "".join(traceback.format_exception(exc)),
            **run.as_context(),
        }
        try:
            self._audit.error(
                f"Error processing status flow rules: {exc}",
                SUBJECT_SYSTEM,
                0,
                run.rule_id,
                context,
            )
        except AuditWriteError as audit_exc:
            # Audit store is down; the caller still gets the ProcessingError.
            self._logger.error("statusflow_run_audit_unavailable", error=str(audit_exc))


__all__ = ["RuleProcessor"]
