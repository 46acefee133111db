"""Error taxonomy shared by the persistence, engine, and CLI layers."""

from __future__ import annotations


class StatusFlowError(RuntimeError):
    """Base class for engine errors."""


class RuleNotFoundError(StatusFlowError, LookupError):
    """Raised when a rule id does not resolve."""

    def __init__(self, rule_id: int) -> None:
        super().__init__(f"Rule with ID {rule_id} not found")
        self.rule_id = rule_id


class ConcurrentTransitionError(StatusFlowError):
    """Raised when an order changed state between refetch and update."""

    def __init__(self, order_id: int, expected_state: int) -> None:
        super().__init__(
            f"order {order_id} is no longer in state {expected_state}; "
            "another writer transitioned it concurrently"
        )
        self.order_id = order_id
        self.expected_state = expected_state


class AuditWriteError(StatusFlowError):
    """Raised when an error-level audit event cannot be persisted."""


class ProcessingError(StatusFlowError):
    """Run-level failure wrapping the first unexpected exception of a run."""


class RunLockedError(StatusFlowError):
    """Raised when another process holds the run lock."""


class AuditQueryValidationError(ValueError):
    """Raised for an invalid sort field or direction on an audit query."""


__all__ = [
    "AuditQueryValidationError",
    "AuditWriteError",
    "ConcurrentTransitionError",
    "ProcessingError",
    "RuleNotFoundError",
    "RunLockedError",
    "StatusFlowError",
]
