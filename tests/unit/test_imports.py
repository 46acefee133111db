"""
statusflow: package import smoke tests

File: tests/unit/test_imports.py

Purpose
- Every module under ``statusflow`` imports cleanly, both inside the test
  process and in a fresh interpreter where no other module warmed it up.
"""

from __future__ import annotations

import importlib
import os
import pkgutil
import subprocess
import sys
from pathlib import Path

import pytest

import statusflow

SRC_PATH = Path(__file__).resolve().parents[2] / "src"


def _module_names() -> list[str]:
    found = pkgutil.walk_packages(statusflow.__path__, prefix="statusflow.")
    return sorted(info.name for info in found if not info.name.endswith("__main__"))


@pytest.mark.unit
def test_module_listing_covers_the_core_layers() -> None:
    names = _module_names()
    for expected in (
        "statusflow.domain.filters",
        "statusflow.control_plane.processor",
        "statusflow.persistence.state_db",
        "statusflow.ui.cli",
    ):
        assert expected in names


@pytest.mark.unit
@pytest.mark.parametrize("name", _module_names())
def test_module_imports(name: str) -> None:
    assert importlib.import_module(name).__name__ == name


@pytest.mark.unit
@pytest.mark.parametrize(
    "name",
    ["statusflow.domain.filters", "statusflow.domain.models", "statusflow.main"],
)
def test_module_imports_in_fresh_interpreter(name: str) -> None:
    env = os.environ.copy()
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = str(SRC_PATH) if not existing else f"{SRC_PATH}{os.pathsep}{existing}"
    completed = subprocess.run(
        [sys.executable, "-c", f"import {name}"],
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )
    assert completed.returncode == 0, completed.stderr
