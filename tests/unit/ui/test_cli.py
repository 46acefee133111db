"""In-process CLI tests: command routing, JSON payloads, and exit codes."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import structlog

from statusflow.observability.logging import shutdown_logging
from statusflow.persistence.state_db import StateDB
from statusflow.ui.cli import run_cli

if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture(autouse=True)
def _isolated_workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    monkeypatch.chdir(tmp_path)
    for name in (
        "STATUSFLOW_CONFIG",
        "STATUSFLOW_PROFILE",
        "STATUSFLOW_STATE_DB",
        "STATUSFLOW_LOG_DIR",
        "STATUSFLOW_LOG_LEVEL",
        "STATUSFLOW_RETENTION_DAYS",
        "STATUSFLOW_BATCH_SIZE",
        "STATUSFLOW_DB_LOGGING",
        "NO_COLOR",
    ):
        monkeypatch.delenv(name, raising=False)
    yield tmp_path
    shutdown_logging()
    structlog.reset_defaults()


def _json(capsys: pytest.CaptureFixture[str], *argv: str) -> dict[str, object]:
    capsys.readouterr()
    assert run_cli([*argv, "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert isinstance(payload, dict)
    return payload


def _text(capsys: pytest.CaptureFixture[str], *argv: str) -> str:
    capsys.readouterr()
    assert run_cli(list(argv)) == 0
    return capsys.readouterr().out


def _fails(capsys: pytest.CaptureFixture[str], *argv: str, exit_code: int) -> str:
    capsys.readouterr()
    assert run_cli(list(argv)) == exit_code
    return capsys.readouterr().err


def _seed(capsys: pytest.CaptureFixture[str]) -> None:
    _json(capsys, "rules", "add", "--from", "2", "--to", "3", "--auto-execute")
    _json(capsys, "orders", "add", "--id", "12", "--state", "2", "--reference", "XKBKNABJK")
    _json(capsys, "orders", "add", "--id", "13", "--state", "5")


@pytest.mark.unit
def test_rules_add_list_show_and_default_state_db(
    capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    created = _json(
        capsys,
        "rules",
        "add",
        "--from",
        "2",
        "--to",
        "3",
        "--delay",
        "48",
        "--condition",
        '{"field": "carrier", "op": "eq", "value": "dhl"}',
    )

    assert created["id"] == 1
    assert created["auto_execute"] is False
    assert created["active"] is True
    assert created["condition"] == {"field": "carrier", "op": "eq", "value": "dhl"}
    assert (tmp_path / "state" / "statusflow.sqlite3").exists()

    listed = _json(capsys, "rules", "list")
    assert [rule["id"] for rule in listed["rules"]] == [1]  # type: ignore[union-attr, index]
    assert _json(capsys, "rules", "list", "--status", "inactive") == {"rules": []}

    shown = _text(capsys, "rules", "show", "1", "--no-color")
    assert "Delay: 48h" in shown
    assert "Auto-execute: no" in shown


@pytest.mark.unit
def test_rules_update_toggle_and_delete(capsys: pytest.CaptureFixture[str]) -> None:
    _json(capsys, "rules", "add", "--from", "2", "--to", "3")

    updated = _json(capsys, "rules", "update", "1", "--to", "4", "--delay", "6", "--no-active")
    assert (updated["target_state"], updated["delay_hours"], updated["active"]) == (4, 6, False)
    assert updated["source_state"] == 2

    toggled = _json(capsys, "rules", "toggle-auto", "1")
    assert toggled["auto_execute"] is True
    assert _json(capsys, "rules", "toggle-active", "1")["active"] is True

    assert _text(capsys, "rules", "delete", "1") == "Deleted rule 1.\n"
    assert "Rule with ID 1 not found" in _fails(capsys, "rules", "show", "1", exit_code=3)
    _fails(capsys, "rules", "delete", "1", exit_code=3)


@pytest.mark.unit
def test_self_loop_rule_is_accepted_with_a_warning(capsys: pytest.CaptureFixture[str]) -> None:
    out = _text(capsys, "rules", "add", "--from", "5", "--to", "5")

    assert "Created rule 1" in out
    assert "Warning: source and target state are equal" in out


@pytest.mark.unit
def test_invalid_condition_is_a_usage_error(capsys: pytest.CaptureFixture[str]) -> None:
    err = _fails(
        capsys,
        "rules",
        "add",
        "--from",
        "2",
        "--to",
        "3",
        "--condition",
        '{"field": "password", "op": "eq", "value": "x"}',
        exit_code=2,
    )

    assert err.startswith("error: invalid --condition:")
    assert _json(capsys, "rules", "list") == {"rules": []}


@pytest.mark.unit
def test_update_of_rule_with_unreadable_condition_needs_a_replacement(
    capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    _json(capsys, "rules", "add", "--from", "2", "--to", "3")
    StateDB(tmp_path / "state" / "statusflow.sqlite3").execute(
        "UPDATE rules SET condition_json = ? WHERE id = 1", ("not json",)
    )

    assert "condition_error" in _json(capsys, "rules", "show", "1")
    err = _fails(capsys, "rules", "update", "1", "--delay", "4", exit_code=2)
    assert "unreadable condition" in err

    repaired = _json(capsys, "rules", "update", "1", "--delay", "4", "--clear-condition")
    assert (repaired["delay_hours"], repaired["condition"]) == (4, None)
    assert "condition_error" not in repaired


@pytest.mark.unit
def test_rules_import_from_yaml(capsys: pytest.CaptureFixture[str], tmp_path: Path) -> None:
    rules_file = tmp_path / "rules.yaml"
    rules_file.write_text(
        "- source_state: 2\n"
        "  target_state: 3\n"
        "  delay_hours: 24\n"
        "  auto_execute: true\n"
        "- source_state: 3\n"
        "  target_state: 4\n"
        "  condition:\n"
        "    - {field: carrier, op: eq, value: dhl}\n",
        encoding="utf-8",
    )
    broken = tmp_path / "broken.yaml"
    broken.write_text("rules: [\n", encoding="utf-8")

    payload = _json(capsys, "rules", "import", str(rules_file))

    created = payload["created"]
    assert isinstance(created, list)
    assert [(rule["source_state"], rule["target_state"]) for rule in created] == [(2, 3), (3, 4)]
    _fails(capsys, "rules", "import", str(broken), exit_code=2)


@pytest.mark.unit
def test_orders_add_show_and_duplicates(capsys: pytest.CaptureFixture[str]) -> None:
    order = _json(
        capsys,
        "orders",
        "add",
        "--id",
        "12",
        "--state",
        "2",
        "--carrier",
        "dhl",
        "--total-paid",
        "19.9",
    )
    assert (order["id"], order["current_state"], order["carrier"]) == (12, 2, "dhl")

    err = _fails(capsys, "orders", "add", "--id", "12", "--state", "2", exit_code=2)
    assert "order 12 already exists" in err

    shown = _json(capsys, "orders", "show", "12")
    assert shown["transitions"] == []
    _fails(capsys, "orders", "show", "99", exit_code=3)


@pytest.mark.unit
def test_run_applies_rules_and_writes_audit_trail(
    capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    _seed(capsys)

    dry = _json(capsys, "run", "--dry-run")
    assert dry == {"applied": 1, "dry_run": True, "rule_id": None, "subject_type": None}
    assert _json(capsys, "orders", "show", "12")["current_state"] == 2

    live = _json(capsys, "run")
    assert live["applied"] == 1
    order = _json(capsys, "orders", "show", "12")
    assert order["current_state"] == 3
    transitions = order["transitions"]
    assert isinstance(transitions, list)
    assert [(t["from_state"], t["to_state"], t["rule_id"]) for t in transitions] == [(2, 3, 1)]
    assert _json(capsys, "orders", "show", "13")["current_state"] == 5

    rerun = _text(capsys, "run", "--no-color")
    assert "Mode: live" in rerun
    assert "Applied: 0 transitions" in rerun
    assert list((tmp_path / "logs").rglob("statusflow.jsonl"))


@pytest.mark.unit
def test_logs_list_show_delete_and_purge(capsys: pytest.CaptureFixture[str]) -> None:
    _seed(capsys)
    _json(capsys, "run")

    listed = _json(capsys, "logs", "list", "--order-by", "created_at", "--direction", "asc")
    events = listed["events"]
    assert isinstance(events, list)
    assert listed["total"] == 3
    assert [event["message"] for event in events] == [
        "Status changed from 2 to 3",
        "Rule processed 1 status transitions",
        "Processed 1 status transitions",
    ]

    changed = _json(capsys, "logs", "list", "--subject-type", "order", "--include-rule-info")
    assert changed["total"] == 1
    only = changed["events"][0]  # type: ignore[index]
    assert (only["subject_id"], only["rule_source_state"], only["rule_target_state"]) == (12, 2, 3)
    assert _json(capsys, "logs", "list", "--level", "error")["total"] == 0

    first_id = events[0]["id"]
    assert _json(capsys, "logs", "show", str(first_id))["context"] == {
        "from_status": 2,
        "to_status": 3,
        "reference": "XKBKNABJK",
    }
    assert _text(capsys, "logs", "delete", str(first_id)) == f"Deleted audit event {first_id}.\n"
    assert "not found" in _fails(capsys, "logs", "show", str(first_id), exit_code=3)
    _fails(capsys, "logs", "delete", str(first_id), exit_code=3)

    refused = _fails(capsys, "logs", "purge", exit_code=2)
    assert "without --yes" in refused
    assert _text(capsys, "logs", "purge", "--yes") == "Deleted 2 audit events.\n"
    assert _json(capsys, "logs", "list")["total"] == 0


@pytest.mark.unit
def test_logs_list_rejects_bad_dates(capsys: pytest.CaptureFixture[str]) -> None:
    err = _fails(capsys, "logs", "list", "--from", "last tuesday", exit_code=2)

    assert "invalid --from" in err


@pytest.mark.unit
def test_clean_logs_reports_effective_retention(capsys: pytest.CaptureFixture[str]) -> None:
    _seed(capsys)
    _json(capsys, "run")

    assert _json(capsys, "clean-logs") == {"deleted": 0, "retention_days": 30}
    assert _json(capsys, "clean-logs", "--days", "0") == {"deleted": 0, "retention_days": 30}
    assert _json(capsys, "clean-logs", "--days", "7")["retention_days"] == 7
    assert _json(capsys, "logs", "list")["total"] == 3


@pytest.mark.unit
def test_state_names_label_rule_output(capsys: pytest.CaptureFixture[str]) -> None:
    assert _text(capsys, "states", "set", "3", "Shipped") == "State 3 is now named 'Shipped'.\n"
    assert _json(capsys, "states", "list") == {"states": [{"id": 3, "name": "Shipped"}]}

    out = _text(capsys, "rules", "add", "--from", "2", "--to", "3", "--no-color")
    assert "To: 3 (Shipped)" in out
    assert "From: 2" in out


@pytest.mark.unit
def test_config_command_and_bad_config_file(
    capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    dumped = json.loads(_text(capsys, "config", "--profile", "dry_run_default"))
    assert dumped["engine"]["dry_run"] is True
    assert dumped["paths"]["state_db"] == (tmp_path / "state" / "statusflow.sqlite3").as_posix()

    bad = tmp_path / "bad.toml"
    bad.write_text("[paths\n", encoding="utf-8")
    _fails(capsys, "config", "--config", str(bad), exit_code=2)
    _fails(capsys, "run", "--profile", "nope", exit_code=2)


@pytest.mark.unit
def test_argparse_rejects_non_positive_ids(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        run_cli(["rules", "show", "0"])

    assert excinfo.value.code == 2
    assert "expected integer > 0" in capsys.readouterr().err
