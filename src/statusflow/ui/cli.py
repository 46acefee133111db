"""Command-line interface router for statusflow."""

from __future__ import annotations

import argparse
import json
import sqlite3
import sys
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import date, datetime, time
from pathlib import Path
from typing import Final, TypeVar

from statusflow.config import (
    ConfigLoadError,
    ConfigValidationError,
    RuntimeSettings,
    dump_effective_config,
    load_config,
)
from statusflow.control_plane import (
    RuleImportError,
    build_engine,
    check_condition_fields,
    clean_audit_log,
    import_rules,
    run,
)
from statusflow.control_plane.runner import Engine, effective_retention_days
from statusflow.domain.errors import (
    AuditQueryValidationError,
    ProcessingError,
    RuleNotFoundError,
    RunLockedError,
)
from statusflow.domain.filters import FilterError, FilterExpression, parse_filter_json, to_json
from statusflow.domain.models import (
    AuditEvent,
    AuditLevel,
    OrderState,
    Rule,
    datetime_to_iso8601z,
)
from statusflow.observability.logging import (
    configure_structlog,
    correlation_scope,
    setup_logging,
    shutdown_logging,
)
from statusflow.persistence import (
    AuditQueryFilters,
    OrderStateRepo,
    StateDB,
    StateDBError,
)
from statusflow.ui.render import CLIRenderer, create_renderer, state_label

try:
    from datetime import UTC
except ImportError:  # pragma: no cover - Python < 3.11 fallback
    from datetime import timezone

    UTC = timezone.utc  # noqa: UP017

_T = TypeVar("_T")

_AUDIT_ORDER_FIELDS: Final[tuple[str, ...]] = (
    "created_at",
    "level",
    "subject_type",
    "subject_id",
    "rule_id",
)


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="statusflow",
        description=(
            "statusflow: rule-driven order status transitions with an audit trail.\n\n"
            "Common workflows:\n"
            "  statusflow run                 Apply every auto-executing rule once\n"
            "  statusflow run --dry-run       Report what would change\n"
            "  statusflow rules list          Show configured rules\n"
            "  statusflow logs list           Browse the audit log\n"
            "  statusflow clean-logs          Apply the audit retention window\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to statusflow TOML config (default: ./statusflow.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name.",
    )
    common.add_argument(
        "--state-db",
        default=None,
        help="Override paths.state_db for this invocation.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Process status flow rules once",
        description=(
            "Evaluate rules against orders and apply eligible transitions.\n\n"
            "Without --rule-id only active auto-executing rules run; with it the\n"
            "named rule runs if active, whatever its auto-execute flag.\n\n"
            "Examples:\n"
            "  statusflow run\n"
            "  statusflow run --dry-run --json\n"
            "  statusflow run --rule-id 4 --lock\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument(
        "--subject-type",
        default=None,
        help="Only process subjects of this type (rules apply to 'order').",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Simulate transitions without changing any order.",
    )
    run_parser.add_argument("--rule-id", type=_positive_int_arg, default=None)
    run_parser.add_argument(
        "--lock",
        action="store_true",
        default=False,
        help="Hold the process lease so overlapping runs fail fast.",
    )
    run_parser.add_argument("--json", action="store_true", default=False)
    run_parser.set_defaults(handler=_cmd_run)

    # clean-logs ----------------------------------------------------------
    clean_parser = subparsers.add_parser(
        "clean-logs",
        parents=[common],
        help="Delete audit events older than the retention window",
    )
    clean_parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention override in days (non-positive values use the configured window).",
    )
    clean_parser.add_argument("--json", action="store_true", default=False)
    clean_parser.set_defaults(handler=_cmd_clean_logs)

    # logs ----------------------------------------------------------------
    logs_parser = subparsers.add_parser("logs", help="Browse and manage the audit log")
    logs_sub = logs_parser.add_subparsers(dest="logs_command", required=True)

    logs_list = logs_sub.add_parser("list", parents=[common], help="Query audit events")
    logs_list.add_argument("--level", choices=[level.value for level in AuditLevel], default=None)
    logs_list.add_argument("--subject-type", default=None)
    logs_list.add_argument("--subject-id", type=int, default=None)
    logs_list.add_argument("--rule-id", type=int, default=None)
    logs_list.add_argument("--from", dest="date_from", default=None, help="ISO date or datetime.")
    logs_list.add_argument("--to", dest="date_to", default=None, help="ISO date or datetime.")
    logs_list.add_argument("--search", default=None, help="Substring match on the message.")
    logs_list.add_argument("--include-rule-info", action="store_true", default=False)
    logs_list.add_argument("--limit", type=int, default=50)
    logs_list.add_argument("--offset", type=int, default=0)
    logs_list.add_argument("--order-by", choices=list(_AUDIT_ORDER_FIELDS), default="created_at")
    logs_list.add_argument("--direction", choices=["ASC", "DESC", "asc", "desc"], default="DESC")
    logs_list.add_argument("--json", action="store_true", default=False)
    logs_list.set_defaults(handler=_cmd_logs_list)

    logs_show = logs_sub.add_parser("show", parents=[common], help="Show one audit event")
    logs_show.add_argument("event_id", type=_positive_int_arg)
    logs_show.add_argument("--json", action="store_true", default=False)
    logs_show.set_defaults(handler=_cmd_logs_show)

    logs_delete = logs_sub.add_parser("delete", parents=[common], help="Delete one audit event")
    logs_delete.add_argument("event_id", type=_positive_int_arg)
    logs_delete.set_defaults(handler=_cmd_logs_delete)

    logs_purge = logs_sub.add_parser("purge", parents=[common], help="Delete every audit event")
    logs_purge.add_argument("--yes", action="store_true", default=False)
    logs_purge.set_defaults(handler=_cmd_logs_purge)

    # rules ---------------------------------------------------------------
    rules_parser = subparsers.add_parser("rules", help="Manage transition rules")
    rules_sub = rules_parser.add_subparsers(dest="rules_command", required=True)

    rules_list = rules_sub.add_parser("list", parents=[common], help="List rules")
    rules_list.add_argument("--status", choices=["all", "active", "inactive"], default="all")
    rules_list.add_argument("--limit", type=int, default=100)
    rules_list.add_argument("--offset", type=int, default=0)
    rules_list.add_argument("--json", action="store_true", default=False)
    rules_list.set_defaults(handler=_cmd_rules_list)

    rules_show = rules_sub.add_parser("show", parents=[common], help="Show one rule")
    rules_show.add_argument("rule_id", type=_positive_int_arg)
    rules_show.add_argument("--json", action="store_true", default=False)
    rules_show.set_defaults(handler=_cmd_rules_show)

    rules_add = rules_sub.add_parser(
        "add",
        parents=[common],
        help="Create a rule",
        description=(
            "Create a transition rule.\n\n"
            "Examples:\n"
            "  statusflow rules add --from 2 --to 3 --delay 48 --auto-execute\n"
            '  statusflow rules add --from 2 --to 5 --condition \'{"field": "carrier", '
            '"op": "eq", "value": "dhl"}\'\n'
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    rules_add.add_argument("--from", dest="source_state", type=_positive_int_arg, required=True)
    rules_add.add_argument("--to", dest="target_state", type=_positive_int_arg, required=True)
    rules_add.add_argument("--delay", dest="delay_hours", type=int, default=0)
    rules_add.add_argument("--condition", default=None, help="Typed condition as JSON.")
    rules_add.add_argument("--auto-execute", action="store_true", default=False)
    rules_add.add_argument("--inactive", action="store_true", default=False)
    rules_add.add_argument("--json", action="store_true", default=False)
    rules_add.set_defaults(handler=_cmd_rules_add)

    rules_update = rules_sub.add_parser("update", parents=[common], help="Edit a rule")
    rules_update.add_argument("rule_id", type=_positive_int_arg)
    rules_update.add_argument("--from", dest="source_state", type=_positive_int_arg, default=None)
    rules_update.add_argument("--to", dest="target_state", type=_positive_int_arg, default=None)
    rules_update.add_argument("--delay", dest="delay_hours", type=int, default=None)
    rules_update.add_argument("--condition", default=None, help="Replacement condition as JSON.")
    rules_update.add_argument("--clear-condition", action="store_true", default=False)
    rules_update.add_argument(
        "--auto-execute", action=argparse.BooleanOptionalAction, default=None
    )
    rules_update.add_argument("--active", action=argparse.BooleanOptionalAction, default=None)
    rules_update.add_argument("--json", action="store_true", default=False)
    rules_update.set_defaults(handler=_cmd_rules_update)

    rules_delete = rules_sub.add_parser("delete", parents=[common], help="Delete a rule")
    rules_delete.add_argument("rule_id", type=_positive_int_arg)
    rules_delete.set_defaults(handler=_cmd_rules_delete)

    for name, column, help_text in (
        ("toggle-active", "active", "Flip a rule's active flag"),
        ("toggle-auto", "auto_execute", "Flip a rule's auto-execute flag"),
    ):
        toggle = rules_sub.add_parser(name, parents=[common], help=help_text)
        toggle.add_argument("rule_id", type=_positive_int_arg)
        toggle.add_argument("--json", action="store_true", default=False)
        toggle.set_defaults(handler=_cmd_rules_toggle, toggle_column=column)

    rules_import = rules_sub.add_parser(
        "import", parents=[common], help="Create rules from a YAML file"
    )
    rules_import.add_argument("rules_file")
    rules_import.add_argument("--json", action="store_true", default=False)
    rules_import.set_defaults(handler=_cmd_rules_import)

    # orders --------------------------------------------------------------
    orders_parser = subparsers.add_parser("orders", help="Seed and inspect orders")
    orders_sub = orders_parser.add_subparsers(dest="orders_command", required=True)

    orders_add = orders_sub.add_parser("add", parents=[common], help="Insert an order")
    orders_add.add_argument("--id", dest="order_id", type=_positive_int_arg, required=True)
    orders_add.add_argument("--state", type=_positive_int_arg, required=True)
    orders_add.add_argument("--reference", default=None)
    orders_add.add_argument("--total-paid", type=float, default=None)
    orders_add.add_argument("--payment-method", default=None)
    orders_add.add_argument("--carrier", default=None)
    orders_add.add_argument("--customer-id", type=int, default=None)
    orders_add.add_argument(
        "--entered-at",
        default=None,
        help="When the order entered its state (ISO date or datetime; default now).",
    )
    orders_add.add_argument("--json", action="store_true", default=False)
    orders_add.set_defaults(handler=_cmd_orders_add)

    orders_show = orders_sub.add_parser(
        "show", parents=[common], help="Show an order and its transition history"
    )
    orders_show.add_argument("order_id", type=_positive_int_arg)
    orders_show.add_argument("--json", action="store_true", default=False)
    orders_show.set_defaults(handler=_cmd_orders_show)

    # states --------------------------------------------------------------
    states_parser = subparsers.add_parser("states", help="Manage order state display names")
    states_sub = states_parser.add_subparsers(dest="states_command", required=True)

    states_list = states_sub.add_parser("list", parents=[common], help="List known states")
    states_list.add_argument("--json", action="store_true", default=False)
    states_list.set_defaults(handler=_cmd_states_list)

    states_set = states_sub.add_parser("set", parents=[common], help="Name a state id")
    states_set.add_argument("state_id", type=_positive_int_arg)
    states_set.add_argument("name")
    states_set.set_defaults(handler=_cmd_states_set)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the effective config as JSON"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    """Compatibility wrapper for main-module wiring."""

    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    subject_type = _optional_str(getattr(args, "subject_type", None))
    dry_run = _flag(args, "dry_run") or settings.dry_run_default
    rule_id: int | None = getattr(args, "rule_id", None)

    with _logging_session(settings, command="run"):
        try:
            applied = run(settings, subject_type, dry_run, rule_id, lock=_flag(args, "lock"))
        except (ProcessingError, RunLockedError) as exc:
            raise CLIError(str(exc), exit_code=1) from exc

    if _flag(args, "json"):
        _emit_json(
            {
                "applied": applied,
                "dry_run": dry_run,
                "rule_id": rule_id,
                "subject_type": subject_type,
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.heading("statusflow run")
    renderer.kv("Mode", "dry-run" if dry_run else "live")
    if rule_id is not None:
        renderer.kv("Rule", rule_id)
    if subject_type is not None:
        renderer.kv("Subject type", subject_type)
    label = "Would apply" if dry_run else "Applied"
    renderer.kv(label, f"{applied} transition{'s' if applied != 1 else ''}")
    return 0


def _cmd_clean_logs(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    days: int | None = getattr(args, "days", None)
    retention = effective_retention_days(days, settings.retention_days)

    with _logging_session(settings, command="clean-logs"):
        deleted = clean_audit_log(settings, days)

    if _flag(args, "json"):
        _emit_json({"deleted": deleted, "retention_days": retention})
        return 0

    renderer = _get_renderer(args)
    renderer.heading("Audit log cleanup")
    renderer.kv("Retention", f"{retention} day{'s' if retention != 1 else ''}")
    renderer.kv("Deleted", deleted)
    return 0


def _cmd_logs_list(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    filters = AuditQueryFilters(
        level=getattr(args, "level", None),
        subject_type=_optional_str(getattr(args, "subject_type", None)),
        subject_id=getattr(args, "subject_id", None),
        rule_id=getattr(args, "rule_id", None),
        date_from=_parse_cli_datetime(getattr(args, "date_from", None), "--from"),
        date_to=_parse_cli_datetime(getattr(args, "date_to", None), "--to", end_of_day=True),
        search=_optional_str(getattr(args, "search", None)),
        include_rule_info=_flag(args, "include_rule_info"),
    )
    limit: int = args.limit
    offset: int = args.offset
    try:
        events = engine.audit.query(filters, limit, offset, args.order_by, args.direction)
        total = engine.audit.count(filters)
    except (AuditQueryValidationError, ValueError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    if _flag(args, "json"):
        _emit_json(
            {
                "events": [event.to_dict() for event in events],
                "limit": limit,
                "offset": offset,
                "total": total,
            }
        )
        return 0

    renderer = _get_renderer(args)
    names = _state_names(engine)
    rows = [_event_row(event, names) for event in events]
    headers = ["ID", "Created", "Level", "Subject", "Rule", "Message"]
    renderer.table(
        headers,
        rows,
        title=f"Audit events ({len(events)} of {total})",
        empty_message="No audit events match.",
    )
    return 0


def _cmd_logs_show(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    event = engine.audit.get(args.event_id)
    if event is None:
        raise CLIError(f"audit event {args.event_id} not found", exit_code=3)

    if _flag(args, "json"):
        _emit_json(event.to_dict())
        return 0

    renderer = _get_renderer(args)
    renderer.heading(f"Audit event {event.id}")
    renderer.kv("Created", event.to_dict()["created_at"])
    renderer.kv("Level", event.level.value)
    renderer.kv("Subject", f"{event.subject_type} #{event.subject_id}")
    renderer.kv("Rule", event.rule_id)
    renderer.kv("Message", event.message)
    if event.context:
        renderer.section("Context")
        for key in sorted(event.context):
            renderer.kv(f"  {key}", json.dumps(event.context[key], ensure_ascii=False))
    return 0


def _cmd_logs_delete(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    if not engine.audit.delete(args.event_id):
        raise CLIError(f"audit event {args.event_id} not found", exit_code=3)
    _get_renderer(args).text(f"Deleted audit event {args.event_id}.")
    return 0


def _cmd_logs_purge(args: argparse.Namespace) -> int:
    if not _flag(args, "yes"):
        raise CLIError("refusing to delete every audit event without --yes", exit_code=2)
    engine = _open_engine(args)
    deleted = engine.audit.delete_all()
    _get_renderer(args).text(f"Deleted {deleted} audit event{'s' if deleted != 1 else ''}.")
    return 0


def _cmd_rules_list(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    status: str = args.status
    active = None if status == "all" else status == "active"
    try:
        rules = engine.rules.list_rules(active=active, limit=args.limit, offset=args.offset)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    if _flag(args, "json"):
        _emit_json({"rules": [rule.to_dict() for rule in rules]})
        return 0

    renderer = _get_renderer(args)
    names = _state_names(engine)
    rows = [
        [
            rule.id,
            state_label(rule.source_state, names),
            state_label(rule.target_state, names),
            f"{rule.delay_hours}h",
            _yes_no(rule.auto_execute),
            _yes_no(rule.active),
            to_json(rule.condition),
        ]
        for rule in rules
    ]
    renderer.table(
        ["ID", "From", "To", "Delay", "Auto", "Active", "Condition"],
        rows,
        title="Rules",
        empty_message="No rules configured.",
    )
    return 0


def _cmd_rules_show(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    rule = _require_rule(engine, args.rule_id)
    _emit_rule(args, engine, rule, heading=f"Rule {rule.id}")
    return 0


def _cmd_rules_add(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    condition = _parse_condition(getattr(args, "condition", None))
    try:
        rule = engine.rules.create(
            source_state=args.source_state,
            target_state=args.target_state,
            delay_hours=args.delay_hours,
            condition=condition,
            auto_execute=_flag(args, "auto_execute"),
            active=not _flag(args, "inactive"),
        )
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    _emit_rule(args, engine, rule, heading=f"Created rule {rule.id}")
    return 0


def _cmd_rules_update(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    current = _require_rule(engine, args.rule_id)
    if _flag(args, "clear_condition") and getattr(args, "condition", None) is not None:
        raise CLIError("--condition and --clear-condition are mutually exclusive", exit_code=2)

    condition: FilterExpression | None = current.condition
    if _flag(args, "clear_condition"):
        condition = None
    elif getattr(args, "condition", None) is not None:
        condition = _parse_condition(args.condition)
    elif current.condition_error is not None:
        raise CLIError(
            f"rule {current.id} has an unreadable condition ({current.condition_error}); "
            "pass --condition or --clear-condition",
            exit_code=2,
        )

    try:
        rule = engine.rules.update(
            current.id,
            source_state=_or_default(args.source_state, current.source_state),
            target_state=_or_default(args.target_state, current.target_state),
            delay_hours=_or_default(args.delay_hours, current.delay_hours),
            condition=condition,
            auto_execute=_or_default(args.auto_execute, current.auto_execute),
            active=_or_default(args.active, current.active),
        )
    except RuleNotFoundError as exc:
        raise CLIError(str(exc), exit_code=3) from exc
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    _emit_rule(args, engine, rule, heading=f"Updated rule {rule.id}")
    return 0


def _cmd_rules_delete(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    try:
        engine.rules.delete(args.rule_id)
    except RuleNotFoundError as exc:
        raise CLIError(str(exc), exit_code=3) from exc
    _get_renderer(args).text(f"Deleted rule {args.rule_id}.")
    return 0


def _cmd_rules_toggle(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    column: str = args.toggle_column
    try:
        if column == "active":
            rule = engine.rules.toggle_active(args.rule_id)
        else:
            rule = engine.rules.toggle_auto_execute(args.rule_id)
    except RuleNotFoundError as exc:
        raise CLIError(str(exc), exit_code=3) from exc
    _emit_rule(args, engine, rule, heading=f"Rule {rule.id}")
    return 0


def _cmd_rules_import(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    path = Path(_require_str(getattr(args, "rules_file", None), "rules_file")).expanduser()
    try:
        created = import_rules(engine.rules, path)
    except RuleImportError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    except ValueError as exc:
        raise CLIError(f"{path.as_posix()}: {exc}", exit_code=2) from exc

    if _flag(args, "json"):
        _emit_json({"created": [rule.to_dict() for rule in created]})
        return 0

    renderer = _get_renderer(args)
    renderer.heading(f"Imported {len(created)} rule{'s' if len(created) != 1 else ''}")
    renderer.items([_rule_summary(rule, _state_names(engine)) for rule in created])
    for rule in created:
        if rule.is_self_loop:
            renderer.warning(f"rule {rule.id} moves state {rule.source_state} to itself")
    return 0


def _cmd_orders_add(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    entered_at = _parse_cli_datetime(getattr(args, "entered_at", None), "--entered-at")
    try:
        order = engine.orders.add_order(
            args.order_id,
            args.state,
            reference=_optional_str(getattr(args, "reference", None)),
            total_paid=getattr(args, "total_paid", None),
            payment_method=_optional_str(getattr(args, "payment_method", None)),
            carrier=_optional_str(getattr(args, "carrier", None)),
            customer_id=getattr(args, "customer_id", None),
            entered_at=entered_at,
        )
    except sqlite3.IntegrityError as exc:
        raise CLIError(f"order {args.order_id} already exists", exit_code=2) from exc
    except (StateDBError, ValueError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    if _flag(args, "json"):
        _emit_json(order.to_dict())
        return 0
    names = _state_names(engine)
    _get_renderer(args).text(
        f"Created order {order.id} in state {state_label(order.current_state, names)}."
    )
    return 0


def _cmd_orders_show(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    order = engine.orders.get(args.order_id)
    if order is None:
        raise CLIError(f"order {args.order_id} not found", exit_code=3)
    history = engine.orders.transition_history(order.id)

    if _flag(args, "json"):
        payload = order.to_dict()
        payload["transitions"] = [
            {
                "id": record.id,
                "from_state": record.from_state,
                "to_state": record.to_state,
                "rule_id": record.rule_id,
                "principal": record.principal,
                "created_at": datetime_to_iso8601z(record.created_at),
            }
            for record in history
        ]
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    names = _state_names(engine)
    renderer.heading(f"Order {order.id}")
    renderer.kv("State", state_label(order.current_state, names))
    renderer.kv("Reference", order.reference)
    renderer.kv("Carrier", order.carrier)
    renderer.kv("Payment", order.payment_method)
    renderer.kv("Total paid", order.total_paid)
    renderer.kv("Customer", order.customer_id)
    renderer.table(
        ["At", "From", "To", "Rule"],
        [
            [
                datetime_to_iso8601z(record.created_at),
                state_label(record.from_state, names),
                state_label(record.to_state, names),
                record.rule_id,
            ]
            for record in history
        ],
        title="Transitions",
        empty_message="No transitions recorded.",
    )
    return 0


def _cmd_states_list(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    states = OrderStateRepo(StateDB(settings.state_db)).list()
    if _flag(args, "json"):
        _emit_json({"states": [{"id": state.id, "name": state.name} for state in states]})
        return 0
    _get_renderer(args).table(
        ["ID", "Name"],
        [[state.id, state.name] for state in states],
        title="Order states",
        empty_message="No state names recorded.",
    )
    return 0


def _cmd_states_set(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    name = _require_str(getattr(args, "name", None), "name")
    try:
        state = OrderStateRepo(StateDB(settings.state_db)).upsert(
            OrderState(id=args.state_id, name=name)
        )
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    _get_renderer(args).text(f"State {state.id} is now named {state.name!r}.")
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    print(dump_effective_config(_load_effective_config(args)))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _load_effective_config(args: argparse.Namespace) -> dict[str, object]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    overrides: dict[str, object] = {}
    state_db = _optional_str(getattr(args, "state_db", None))
    if state_db is not None:
        overrides["paths.state_db"] = state_db

    try:
        loaded = load_config(config_path, profile=profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    return {key: value for key, value in loaded.items()}


def _load_settings(args: argparse.Namespace) -> RuntimeSettings:
    return RuntimeSettings.from_config(_load_effective_config(args))


def _open_engine(args: argparse.Namespace) -> Engine:
    settings = _load_settings(args)
    try:
        return build_engine(StateDB(settings.state_db), settings)
    except StateDBError as exc:
        raise CLIError(f"cannot open state DB {settings.state_db}: {exc}", exit_code=2) from exc


@contextmanager
def _logging_session(settings: RuntimeSettings, *, command: str) -> Iterator[str]:
    """Structured JSON logging for one engine invocation, tagged with a fresh run id."""

    run_id = f"{command}-{uuid.uuid4().hex[:12]}"
    setup_logging(
        {"log_level": settings.log_level, "redact_secrets": settings.redact_secrets},
        run_id=run_id,
        log_dir=settings.log_dir,
    )
    configure_structlog()
    try:
        with correlation_scope(run_id=run_id, command=command):
            yield run_id
    finally:
        shutdown_logging()


def _state_names(engine: Engine) -> dict[int, str]:
    return OrderStateRepo(engine.db).names()


def _require_rule(engine: Engine, rule_id: int) -> Rule:
    try:
        return engine.rules.get_rule_by_id(rule_id)
    except RuleNotFoundError as exc:
        raise CLIError(str(exc), exit_code=3) from exc


def _emit_rule(args: argparse.Namespace, engine: Engine, rule: Rule, *, heading: str) -> None:
    if _flag(args, "json"):
        _emit_json(rule.to_dict())
        return

    renderer = _get_renderer(args)
    names = _state_names(engine)
    renderer.heading(heading)
    renderer.kv("From", state_label(rule.source_state, names))
    renderer.kv("To", state_label(rule.target_state, names))
    renderer.kv("Delay", f"{rule.delay_hours}h")
    renderer.kv("Condition", to_json(rule.condition))
    renderer.kv("Auto-execute", _yes_no(rule.auto_execute))
    renderer.kv("Active", _yes_no(rule.active))
    if rule.is_self_loop:
        renderer.warning("source and target state are equal; this rule never changes an order")


def _rule_summary(rule: Rule, names: Mapping[int, str]) -> str:
    source = state_label(rule.source_state, names)
    target = state_label(rule.target_state, names)
    return f"#{rule.id} {source} -> {target} after {rule.delay_hours}h"


def _event_row(event: AuditEvent, names: Mapping[int, str]) -> list[object]:
    rule = "-" if event.rule_id is None else str(event.rule_id)
    if event.rule_source_state is not None and event.rule_target_state is not None:
        source = state_label(event.rule_source_state, names)
        target = state_label(event.rule_target_state, names)
        rule = f"{rule} ({source} -> {target})"
    return [
        event.id,
        event.to_dict()["created_at"],
        event.level.value,
        f"{event.subject_type} #{event.subject_id}",
        rule,
        event.message,
    ]


def _parse_condition(raw: object) -> FilterExpression | None:
    text = _optional_str(raw)
    if text is None:
        return None
    try:
        condition = parse_filter_json(text)
        if condition is not None:
            check_condition_fields(condition)
    except FilterError as exc:
        raise CLIError(f"invalid --condition: {exc}", exit_code=2) from exc
    return condition


def _parse_cli_datetime(raw: object, flag: str, *, end_of_day: bool = False) -> datetime | None:
    """Accept ``YYYY-MM-DD`` or an ISO datetime; naive values are read as UTC."""

    text = _optional_str(raw)
    if text is None:
        return None
    try:
        if len(text) == 10:
            day = date.fromisoformat(text)
            return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=UTC)
        parsed = datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
    except ValueError as exc:
        message = f"invalid {flag}: {text!r} is not an ISO date or datetime"
        raise CLIError(message, exit_code=2) from exc
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _positive_int_arg(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected integer, got {raw!r}") from exc
    if value <= 0:
        raise argparse.ArgumentTypeError(f"expected integer > 0, got {value}")
    return value


def _or_default(value: _T | None, default: _T) -> _T:
    return default if value is None else value


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string", exit_code=2)
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty", exit_code=2)
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=2)
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    value = getattr(args, name, False)
    return bool(value)


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
