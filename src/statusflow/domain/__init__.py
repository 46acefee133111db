"""
statusflow: domain layer

File: src/statusflow/domain/__init__.py

Purpose
- Domain types shared across layers: Rule, Candidate, Order, AuditEvent,
  transition outcomes, and typed rule conditions.

Non-functional requirements
- Keep the domain layer free of IO side effects.
"""

from statusflow.domain.filters import FilterError, FilterExpression, FilterOp, parse_filter
from statusflow.domain.models import (
    AuditEvent,
    AuditLevel,
    Candidate,
    Order,
    OrderState,
    ProcessRun,
    Rule,
    TransitionOutcome,
    TransitionResult,
)

__all__ = [
    "AuditEvent",
    "AuditLevel",
    "Candidate",
    "FilterError",
    "FilterExpression",
    "FilterOp",
    "Order",
    "OrderState",
    "ProcessRun",
    "Rule",
    "TransitionOutcome",
    "TransitionResult",
    "parse_filter",
]
