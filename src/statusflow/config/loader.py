"""
statusflow: runtime config loader.

File: src/statusflow/config/loader.py

Purpose
- Build the effective config from four layers, later layers winning:
  built-in defaults, ``statusflow.toml``, ``STATUSFLOW_*`` environment
  variables, and CLI overrides. A profile overlay sits between the file and
  the environment.

Behavior
- Every scalar setting has a derived variable (``STATUSFLOW_ENGINE_BATCH_SIZE``)
  plus a few short aliases (``STATUSFLOW_BATCH_SIZE``). Values are coerced to
  the type of the setting they replace and bad values fail loudly.
- ``paths.*`` are made absolute against the config file's directory, or the
  working directory when no file is used.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from statusflow.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "statusflow.toml"
ENV_PREFIX: Final[str] = "STATUSFLOW_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

ENV_ALIASES: Final[Mapping[str, tuple[str, ...]]] = {
    "STATUSFLOW_STATE_DB": ("paths", "state_db"),
    "STATUSFLOW_LOG_DIR": ("paths", "log_dir"),
    "STATUSFLOW_LOG_LEVEL": ("observability", "log_level"),
    "STATUSFLOW_RETENTION_DAYS": ("audit", "retention_days"),
    "STATUSFLOW_BATCH_SIZE": ("engine", "batch_size"),
    "STATUSFLOW_DB_LOGGING": ("audit", "db_logging_enabled"),
}


class ConfigLoadError(ValueError):
    """The config file or an override could not be read or coerced."""


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    """Typed view of the effective config handed to the engine at construction."""

    state_db: Path
    log_dir: Path
    retention_days: int
    db_logging_enabled: bool
    batch_size: int
    lock_lease_seconds: int
    dry_run_default: bool
    log_level: str
    redact_secrets: bool

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> RuntimeSettings:
        paths, audit = config["paths"], config["audit"]
        engine, observability = config["engine"], config["observability"]
        return cls(
            state_db=Path(paths["state_db"]),
            log_dir=Path(paths["log_dir"]),
            retention_days=int(audit["retention_days"]),
            db_logging_enabled=bool(audit["db_logging_enabled"]),
            batch_size=int(engine["batch_size"]),
            lock_lease_seconds=int(engine["lock_lease_seconds"]),
            dry_run_default=bool(engine["dry_run"]),
            log_level=str(observability["log_level"]),
            redact_secrets=bool(observability["redact_secrets"]),
        )


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated, path-normalized effective config.

    A missing ``config_path`` is an error when given explicitly; the implicit
    ``./statusflow.toml`` is optional. ``cli_overrides`` keys are dotted
    setting paths (``engine.batch_size``) plus ``profile``.
    """

    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    source = (
        Path.cwd() / DEFAULT_CONFIG_FILE
        if config_path is None
        else Path(config_path).expanduser()
    ).resolve()

    config = assert_valid_config(
        merge_config(default_config(), _read_toml(source, required=config_path is not None))
    )
    selected = _pick_profile(profile, overrides, env)
    if selected:
        config = apply_profile_overlay(config, selected)

    for layer in (_env_layer(config, env), _cli_layer(overrides)):
        config = merge_config(config, layer)
    config = assert_valid_config(config, active_profile=selected)
    return normalize_paths(config, base_dir=source.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Make every ``PATH_FIELDS`` entry an absolute posix path under ``base_dir``."""

    out = merge_config({}, config)
    for section, key in PATH_FIELDS:
        table = out.get(section)
        if isinstance(table, dict) and isinstance(table.get(key), str):
            candidate = Path(os.path.expandvars(table[key])).expanduser()
            if not candidate.is_absolute():
                candidate = base_dir / candidate
            table[key] = Path(os.path.normpath(candidate)).as_posix()
    return out


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(config, sort_keys=True, indent=2, ensure_ascii=False)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _pick_profile(
    explicit: str | None, overrides: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = overrides.get("profile")
    if candidate is None:
        candidate = env.get(f"{ENV_PREFIX}PROFILE")
    if candidate is None:
        return None
    if not isinstance(candidate, str):
        raise ConfigLoadError("cli override 'profile' must be a string")
    return candidate.strip() or None


def _leaves(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key, value in payload.items():
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _env_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    current = {
        path: value for path, value in _leaves(config) if path[0] not in {"meta", "profiles"}
    }
    bindings = {ENV_PREFIX + "_".join(path).upper(): path for path in current}
    # Short aliases are applied after the derived names and win over them.
    bindings.update(ENV_ALIASES)

    layer: dict[str, Any] = {}
    for name, path in bindings.items():
        raw = env.get(name)
        if raw is not None:
            value = _coerce(raw.strip(), current.get(path), f"{name} -> {'.'.join(path)}")
            _assign(layer, path, value)
    return layer


def _coerce(raw: str, like: object, label: str) -> object:
    if isinstance(like, bool):
        lowered = raw.lower()
        if lowered in _TRUTHY or lowered in _FALSY:
            return lowered in _TRUTHY
        raise ConfigLoadError(f"{label} must be a boolean (true/false/1/0/yes/no/on/off)")
    if isinstance(like, int):
        try:
            return int(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"{label} must be an integer") from exc
    return raw


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key, value in overrides.items():
        if key == "profile" or value is None:
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(layer, path, value)
    return layer


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    *parents, leaf = path
    for part in parents:
        target = target.setdefault(part, {})
    target[leaf] = value


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_ALIASES",
    "ENV_PREFIX",
    "RuntimeSettings",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
]
