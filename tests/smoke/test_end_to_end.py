"""
statusflow: end-to-end smoke test

File: tests/smoke/test_end_to_end.py

Purpose
- Drive a realistic rule set through the console entrypoint against a config
  file, a seeded order book, and the audit trail, then reread everything from
  the state DB.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from statusflow.main import cli_entrypoint
from statusflow.observability.logging import shutdown_logging
from statusflow.persistence.entity_store import OrderStore
from statusflow.persistence.repositories import AuditEventRepo, AuditQueryFilters
from statusflow.persistence.state_db import StateDB

_RULES_YAML = """\
- source_state: 2
  target_state: 3
  delay_hours: 48
  auto_execute: true
- source_state: 3
  target_state: 4
  condition:
    all:
      - {field: carrier, op: eq, value: dhl}
      - {field: total_paid, op: ge, value: 100}
  auto_execute: true
- source_state: 10
  target_state: 6
  auto_execute: false
"""

_CONFIG_TOML = """\
[paths]
state_db = "var/orders.sqlite3"
log_dir = "var/logs"

[engine]
batch_size = 2

[audit]
retention_days = 14
"""


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    shutdown_logging()
    structlog.reset_defaults()


def _cli(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, str]:
    capsys.readouterr()
    code = cli_entrypoint(list(argv))
    return code, capsys.readouterr().out


@pytest.mark.smoke
def test_end_to_end_rule_run_from_config_file(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("STATUSFLOW_STATE_DB", "STATUSFLOW_PROFILE", "STATUSFLOW_BATCH_SIZE"):
        monkeypatch.delenv(name, raising=False)
    (tmp_path / "statusflow.toml").write_text(_CONFIG_TOML, encoding="utf-8")
    (tmp_path / "rules.yaml").write_text(_RULES_YAML, encoding="utf-8")

    code, _ = _cli(capsys, "rules", "import", "rules.yaml", "--json")
    assert code == 0
    seeds = [
        ("1", "2", "2026-01-01", "dhl", "150"),
        ("2", "2", "2026-01-02", "ups", "20"),
        ("3", "2", None, "dhl", "300"),
        ("4", "10", "2026-01-01", "dhl", "10"),
    ]
    for order_id, state, entered_at, carrier, total in seeds:
        argv = ["orders", "add", "--id", order_id, "--state", state]
        argv += ["--carrier", carrier, "--total-paid", total]
        if entered_at is not None:
            argv += ["--entered-at", entered_at]
        assert _cli(capsys, *argv)[0] == 0

    code, out = _cli(capsys, "run", "--json")
    assert code == 0
    assert json.loads(out)["applied"] == 3

    code, out = _cli(capsys, "run", "--json", "--lock")
    assert code == 0
    assert json.loads(out)["applied"] == 0

    db = StateDB(tmp_path / "var" / "orders.sqlite3")
    orders = OrderStore(db)
    assert [orders.get(i).current_state for i in (1, 2, 3, 4)] == [  # type: ignore[union-attr]
        4,
        3,
        2,
        10,
    ]
    assert [(t.from_state, t.to_state) for t in orders.transition_history(1)] == [(2, 3), (3, 4)]

    audit = AuditEventRepo(db)
    assert audit.count(AuditQueryFilters(level="error")) == 0
    summaries = audit.query(
        AuditQueryFilters(subject_type="system"), order_by="id", order_direction="ASC"
    )
    assert [event.message for event in summaries] == [
        "Processed 3 status transitions",
        "Processed 0 status transitions",
    ]
    assert list((tmp_path / "var" / "logs").rglob("statusflow.jsonl"))

    code, out = _cli(capsys, "clean-logs", "--json")
    assert code == 0
    assert json.loads(out) == {"deleted": 0, "retention_days": 14}

    assert _cli(capsys, "rules", "show", "99")[0] == 3
    assert _cli(capsys, "run", "--config", "missing.toml")[0] == 2


@pytest.mark.smoke
def test_module_entrypoint_help() -> None:
    project_root = Path(__file__).resolve().parents[2]
    env = os.environ.copy()
    src_path = str(project_root / "src")
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = src_path if not existing else f"{src_path}:{existing}"

    completed = subprocess.run(
        [sys.executable, "-m", "statusflow", "--help"],
        cwd=project_root,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )

    assert completed.returncode == 0, completed.stderr
    assert "usage: statusflow" in completed.stdout
    assert "clean-logs" in completed.stdout
