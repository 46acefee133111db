"""
statusflow: configuration schema and validation.

File: src/statusflow/config/schema.py

Purpose
- Built-in defaults, the field table every config section is checked against,
  and the deep-merge used for files, environment overrides, and profiles.

Behavior
- Validation never stops at the first problem: it returns every issue with a
  dotted path (``engine.batch_size``) so a broken file is fixed in one pass.
- Profiles are partial overlays over ``paths``, ``audit``, ``engine`` and
  ``observability``; the merged result is validated again after applying one.
- Engine and audit settings are handed to components at construction; nothing
  here is read from process-wide state.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from statusflow.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BATCH_SIZE,
    DEFAULT_LOCK_LEASE_SECONDS,
    DEFAULT_RETENTION_DAYS,
    RULE_SUBJECT_DOMAIN,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("dry_run_default", "verbose")

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "log_dir"),
)

_PROFILE_NAME: Final[re.Pattern[str]] = re.compile(r"^[a-z][a-z0-9_-]*$")
_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")


class MetaConfig(TypedDict):
    schema_version: int


class PathsConfig(TypedDict):
    state_db: str
    log_dir: str


class AuditConfig(TypedDict):
    retention_days: int
    db_logging_enabled: bool


class EngineConfig(TypedDict):
    batch_size: int
    subject_domain: str
    lock_lease_seconds: int
    dry_run: bool


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    paths: dict[str, object]
    audit: dict[str, object]
    engine: dict[str, object]
    observability: dict[str, object]


class StatusFlowConfig(TypedDict):
    meta: MetaConfig
    paths: PathsConfig
    audit: AuditConfig
    engine: EngineConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[StatusFlowConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "paths": {
        "state_db": "state/statusflow.sqlite3",
        "log_dir": "logs/",
    },
    "audit": {
        # 0 falls back to the built-in window.
        "retention_days": DEFAULT_RETENTION_DAYS,
        "db_logging_enabled": True,
    },
    "engine": {
        "batch_size": DEFAULT_BATCH_SIZE,
        "subject_domain": RULE_SUBJECT_DOMAIN,
        "lock_lease_seconds": DEFAULT_LOCK_LEASE_SECONDS,
        "dry_run": False,
    },
    "observability": {
        "log_level": "INFO",
        "redact_secrets": True,
    },
    "profiles": {
        "dry_run_default": {"engine": {"dry_run": True}},
        "verbose": {"observability": {"log_level": "DEBUG"}},
    },
}


@dataclass(frozen=True, slots=True)
class _Field:
    kind: Literal["int", "bool", "path", "choice"]
    minimum: int | None = None
    choices: tuple[str, ...] = ()


_SECTIONS: Final[dict[str, dict[str, _Field]]] = {
    "meta": {"schema_version": _Field("int", minimum=1)},
    "paths": {"state_db": _Field("path"), "log_dir": _Field("path")},
    "audit": {
        "retention_days": _Field("int", minimum=0),
        "db_logging_enabled": _Field("bool"),
    },
    "engine": {
        "batch_size": _Field("int", minimum=0),
        "subject_domain": _Field("choice", choices=(RULE_SUBJECT_DOMAIN,)),
        "lock_lease_seconds": _Field("int", minimum=1),
        "dry_run": _Field("bool"),
    },
    "observability": {
        "log_level": _Field("choice", choices=_LOG_LEVELS),
        "redact_secrets": _Field("bool"),
    },
}
_OVERLAY_SECTIONS: Final[tuple[str, ...]] = tuple(name for name in _SECTIONS if name != "meta")


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Strict validation failed; ``issues`` lists every problem found."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


def default_config() -> StatusFlowConfig:
    """Fresh deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade statusflow.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the statusflow runtime"
        )
    return "schema version is current"


def _clone(value: object) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _clone(item) for key, item in value.items()}
    return copy.deepcopy(value)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is modified."""

    merged: dict[str, Any] = _clone(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _clone(value)
    return merged


_INVALID: Final[object] = object()


class _Checker:
    """Walks a raw config payload, collecting issues and a normalized copy."""

    def __init__(self) -> None:
        self.issues: list[ConfigValidationIssue] = []

    def flag(self, path: str, message: str) -> None:
        self.issues.append(ConfigValidationIssue(path=path, message=message))

    def mapping(self, value: object, path: str) -> dict[str, object] | None:
        if not isinstance(value, Mapping):
            self.flag(path, f"expected object, got {type(value).__name__}")
            return None
        out: dict[str, object] = {}
        for key, item in value.items():
            if isinstance(key, str):
                out[key] = item
            else:
                self.flag(path, f"object key must be string, got {type(key).__name__}")
        return out

    def keys(
        self, payload: Mapping[str, object], allowed: Sequence[str], path: str, *, required: bool
    ) -> None:
        for key in sorted(set(payload) - set(allowed)):
            self.flag(_dotted(path, key), "unknown field")
        if required:
            for key in sorted(set(allowed) - set(payload)):
                self.flag(_dotted(path, key), "missing required field")

    def scalar(self, spec: _Field, value: object, path: str) -> object:
        if spec.kind == "bool":
            if isinstance(value, bool):
                return value
            self.flag(path, f"expected boolean, got {type(value).__name__}")
            return _INVALID
        if spec.kind == "int":
            if isinstance(value, bool) or not isinstance(value, int):
                self.flag(path, f"expected integer, got {type(value).__name__}")
                return _INVALID
            if spec.minimum is not None and value < spec.minimum:
                self.flag(path, f"must be >= {spec.minimum}")
                return _INVALID
            return value

        if not isinstance(value, str):
            self.flag(path, f"expected string, got {type(value).__name__}")
            return _INVALID
        text = value.strip()
        if not text:
            self.flag(path, "must not be empty")
            return _INVALID
        if spec.kind == "path" and "\x00" in text:
            self.flag(path, "must not contain NUL bytes")
            return _INVALID
        if spec.kind == "choice" and text not in spec.choices:
            expected = ", ".join(sorted(spec.choices))
            self.flag(path, f"invalid value {text!r}; expected one of: {expected}")
            return _INVALID
        return text

    def section(self, name: str, raw: object, path: str, *, partial: bool) -> dict[str, Any]:
        payload = self.mapping(raw, path)
        if payload is None:
            return {}
        fields = _SECTIONS[name]
        self.keys(payload, tuple(fields), path, required=not partial)
        out: dict[str, Any] = {}
        for key in sorted(fields.keys() & payload.keys()):
            parsed = self.scalar(fields[key], payload[key], _dotted(path, key))
            if parsed is not _INVALID:
                out[key] = parsed
        return out

    def profiles(self, raw: object) -> dict[str, Any]:
        payload = self.mapping(raw, "profiles")
        if payload is None:
            return {}
        out: dict[str, Any] = {}
        for name in sorted(payload):
            path = _dotted("profiles", name)
            if not _PROFILE_NAME.fullmatch(name):
                self.flag(path, "profile name must match ^[a-z][a-z0-9_-]*$")
                continue
            overlay = self.mapping(payload[name], path)
            if overlay is None:
                continue
            self.keys(overlay, _OVERLAY_SECTIONS, path, required=False)
            out[name] = {
                section: self.section(section, overlay[section], _dotted(path, section), partial=True)
                for section in _OVERLAY_SECTIONS
                if overlay.get(section) is not None
            }
        return out

    def root(self, raw: object) -> dict[str, Any] | None:
        payload = self.mapping(raw, "<root>")
        if payload is None:
            return None
        self.keys(payload, (*_SECTIONS, "profiles"), "", required=False)
        for name in sorted(_SECTIONS):
            if name not in payload:
                self.flag(name, "missing required field")

        out: dict[str, Any] = {}
        for name in sorted(_SECTIONS):
            if payload.get(name) is not None:
                out[name] = self.section(name, payload[name], name, partial=False)
        version = out.get("meta", {}).get("schema_version")
        if isinstance(version, int) and version != ConfigSchemaVersion:
            self.flag("meta.schema_version", migration_guidance(version))
        if payload.get("profiles") is not None:
            out["profiles"] = self.profiles(payload["profiles"])
        return out


def _dotted(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Check ``config`` against the field table and report every issue found."""

    checker = _Checker()
    normalized = checker.root(config)
    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if normalized is not None and selected and selected not in normalized.get("profiles", {}):
        checker.flag("profiles", f"profile {selected!r} is not defined")
    if normalized is None or checker.issues:
        return ConfigValidationResult(config=None, issues=tuple(checker.issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile over ``config`` and validate the result."""

    base: dict[str, Any] = _clone(config)
    selected = (profile or "").strip()
    if not selected:
        return base

    profiles = base.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(base, overlay), active_profile=selected)


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ProfileOverlay",
    "StatusFlowConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
