"""Config loading: precedence, env aliases, profiles, and path normalization."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from statusflow.config.loader import (
    ConfigLoadError,
    RuntimeSettings,
    dump_effective_config,
    load_config,
)
from statusflow.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.mark.unit
def test_precedence_cli_over_env_over_file_over_defaults(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "statusflow.toml", "[engine]\nbatch_size = 10\n")
    empty = _write_config(tmp_path / "empty.toml", "")

    assert load_config(empty, environ={})["engine"]["batch_size"] == 50
    assert load_config(config_path, environ={})["engine"]["batch_size"] == 10
    env = {"STATUSFLOW_ENGINE_BATCH_SIZE": "20"}
    assert load_config(config_path, environ=env)["engine"]["batch_size"] == 20
    cli = load_config(config_path, environ=env, cli_overrides={"engine.batch_size": 30})
    assert cli["engine"]["batch_size"] == 30


@pytest.mark.unit
def test_short_env_aliases_are_coerced(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "statusflow.toml", "")

    loaded = load_config(
        config_path,
        environ={
            "STATUSFLOW_RETENTION_DAYS": "7",
            "STATUSFLOW_DB_LOGGING": "off",
            "STATUSFLOW_LOG_LEVEL": "DEBUG",
            "STATUSFLOW_STATE_DB": "/var/lib/statusflow/db.sqlite3",
        },
    )

    assert loaded["audit"] == {"db_logging_enabled": False, "retention_days": 7}
    assert loaded["observability"]["log_level"] == "DEBUG"
    assert loaded["paths"]["state_db"] == "/var/lib/statusflow/db.sqlite3"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("environ", "message"),
    [
        ({"STATUSFLOW_BATCH_SIZE": "many"}, "must be an integer"),
        ({"STATUSFLOW_DB_LOGGING": "maybe"}, "must be a boolean"),
    ],
)
def test_bad_env_values_fail_loudly(tmp_path: Path, environ: dict[str, str], message: str) -> None:
    config_path = _write_config(tmp_path / "statusflow.toml", "")

    with pytest.raises(ConfigLoadError, match=message):
        load_config(config_path, environ=environ)


@pytest.mark.unit
def test_profiles_from_argument_and_environment(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "statusflow.toml",
        """
[profiles.nightly.engine]
batch_size = 500

[profiles.nightly.audit]
retention_days = 90
""".strip(),
    )

    nightly = load_config(config_path, profile="nightly", environ={})
    assert (nightly["engine"]["batch_size"], nightly["audit"]["retention_days"]) == (500, 90)

    dry = load_config(config_path, environ={"STATUSFLOW_PROFILE": "dry_run_default"})
    assert dry["engine"]["dry_run"] is True

    with pytest.raises(ConfigValidationError, match="profile 'weekly' is not defined"):
        load_config(config_path, profile="weekly", environ={})


@pytest.mark.unit
def test_paths_are_resolved_against_the_config_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "etc" / "statusflow.toml",
        '[paths]\nstate_db = "../var/statusflow.sqlite3"\nlog_dir = "logs/"\n',
    )

    loaded = load_config(config_path, environ={})
    settings = RuntimeSettings.from_config(loaded)

    assert settings.state_db == tmp_path / "var" / "statusflow.sqlite3"
    assert settings.log_dir == tmp_path / "etc" / "logs"


@pytest.mark.unit
def test_missing_explicit_file_and_invalid_toml(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "nope.toml", environ={})

    broken = _write_config(tmp_path / "broken.toml", "[engine\n")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


@pytest.mark.unit
def test_implicit_config_in_working_directory_is_optional(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = load_config(environ={})

    assert loaded["paths"]["state_db"] == (tmp_path / "state" / "statusflow.sqlite3").as_posix()


@pytest.mark.unit
def test_runtime_settings_and_effective_dump(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "statusflow.toml", "")
    loaded = load_config(config_path, environ={})

    settings = RuntimeSettings.from_config(loaded)
    dumped = dump_effective_config(loaded)

    assert settings.retention_days == 30
    assert settings.db_logging_enabled is True
    assert settings.batch_size == 50
    assert settings.lock_lease_seconds == 3_600
    assert settings.dry_run_default is False
    assert json.loads(dumped) == loaded
    assert dumped == dump_effective_config(load_config(config_path, environ={}))
