"""Control-plane public API: the rule evaluation and transition engine."""

from statusflow.control_plane.applier import TransitionApplier
from statusflow.control_plane.processor import RuleProcessor
from statusflow.control_plane.rule_import import (
    RuleImportError,
    check_condition_fields,
    import_rules,
)
from statusflow.control_plane.runner import Engine, build_engine, clean_audit_log, run
from statusflow.control_plane.selector import EligibilitySelector

__all__ = [
    "EligibilitySelector",
    "Engine",
    "RuleImportError",
    "RuleProcessor",
    "TransitionApplier",
    "build_engine",
    "check_condition_fields",
    "clean_audit_log",
    "import_rules",
    "run",
]
