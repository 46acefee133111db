"""Load rule definitions from YAML and create them through :class:`RuleRepo`."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

from statusflow.domain.filters import (
    FilterError,
    FilterExpression,
    parse_filter,
    parse_filter_sequence,
    referenced_fields,
)
from statusflow.persistence.entity_store import ORDER_FILTER_COLUMNS

if TYPE_CHECKING:
    from statusflow.domain.models import Rule
    from statusflow.persistence.repositories import RuleRepo

_ALLOWED_KEYS = frozenset(
    {"source_state", "target_state", "delay_hours", "condition", "auto_execute", "active"}
)


class RuleImportError(ValueError):
    """Raised when a rules file cannot be read or any entry is invalid."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = tuple(errors)
        super().__init__("invalid rules file:\n" + "\n".join(f"- {item}" for item in self.errors))


@dataclass(frozen=True, slots=True)
class RuleDefinition:
    source_state: int
    target_state: int
    delay_hours: int = 0
    condition: FilterExpression | None = None
    auto_execute: bool = False
    active: bool = True


def load_rule_definitions(path: str | Path) -> list[RuleDefinition]:
    """Parse a YAML list of rules (or a mapping with a ``rules`` list).

    Every entry is validated before anything is returned; one bad entry
    rejects the whole file.
    """

    file_path = Path(path)
    try:
        with file_path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except OSError as exc:
        raise RuleImportError([f"failed to read {file_path.as_posix()}: {exc}"]) from exc
    except yaml.YAMLError as exc:
        raise RuleImportError([f"invalid YAML in {file_path.as_posix()}: {exc}"]) from exc

    records: object = payload.get("rules") if isinstance(payload, Mapping) else payload
    if not isinstance(records, list):
        raise RuleImportError(
            [f"{file_path.as_posix()} must be a list or contain a 'rules' list"]
        )

    errors: list[str] = []
    definitions: list[RuleDefinition] = []
    for index, record in enumerate(records):
        entry_path = f"{file_path.as_posix()}[{index}]"
        if not isinstance(record, Mapping):
            errors.append(f"{entry_path} must be an object")
            continue
        try:
            definitions.append(_coerce_definition(record, entry_path))
        except ValueError as exc:
            errors.append(str(exc))

    if errors:
        raise RuleImportError(errors)
    return definitions


def check_condition_fields(condition: FilterExpression) -> None:
    """Reject conditions naming fields the order store cannot filter on."""

    unknown = sorted(referenced_fields(condition) - ORDER_FILTER_COLUMNS.keys())
    if unknown:
        allowed = ", ".join(sorted(ORDER_FILTER_COLUMNS))
        raise FilterError(f"unknown field(s) {', '.join(unknown)}; expected one of: {allowed}")


def import_rules(repo: RuleRepo, path: str | Path) -> list[Rule]:
    return [
        repo.create(
            source_state=definition.source_state,
            target_state=definition.target_state,
            delay_hours=definition.delay_hours,
            condition=definition.condition,
            auto_execute=definition.auto_execute,
            active=definition.active,
        )
        for definition in load_rule_definitions(path)
    ]


def _coerce_definition(record: Mapping[object, object], path: str) -> RuleDefinition:
    unknown = sorted(str(key) for key in record if key not in _ALLOWED_KEYS)
    if unknown:
        raise ValueError(f"{path}: unknown field(s): {', '.join(unknown)}")

    condition_raw = record.get("condition")
    condition: FilterExpression | None = None
    if condition_raw is not None:
        try:
            if isinstance(condition_raw, list):
                condition = parse_filter_sequence(condition_raw)
            elif isinstance(condition_raw, Mapping):
                condition = parse_filter(condition_raw)
            else:
                raise FilterError("expected object or list of comparisons")
            check_condition_fields(condition)
        except FilterError as exc:
            raise ValueError(f"{path}.condition: {exc}") from exc

    return RuleDefinition(
        source_state=_positive_int(record.get("source_state"), f"{path}.source_state"),
        target_state=_positive_int(record.get("target_state"), f"{path}.target_state"),
        delay_hours=_non_negative_int(record.get("delay_hours", 0), f"{path}.delay_hours"),
        condition=condition,
        auto_execute=_bool(record.get("auto_execute", False), f"{path}.auto_execute"),
        active=_bool(record.get("active", True), f"{path}.active"),
    )


def _positive_int(value: object, path: str) -> int:
    parsed = _non_negative_int(value, path)
    if parsed == 0:
        raise ValueError(f"{path}: must be > 0")
    return parsed


def _non_negative_int(value: object, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{path}: expected integer, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{path}: must be >= 0")
    return value


def _bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{path}: expected boolean, got {type(value).__name__}")
    return value


__all__ = [
    "RuleDefinition",
    "RuleImportError",
    "check_condition_fields",
    "import_rules",
    "load_rule_definitions",
]
