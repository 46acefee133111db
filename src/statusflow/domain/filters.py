"""
statusflow: typed rule condition expressions

File: src/statusflow/domain/filters.py

Purpose
- Represent an optional per-rule filter as a small tree of tagged variants
  (field reference, operator, literal) instead of free-form SQL text.
- Parse the canonical mapping form stored on rule rows and in YAML/JSON input.
- Compile an expression to a parameterized SQL fragment for the entity store.

Canonical mapping form
- ``{"field": "payment_method", "op": "eq", "value": "cheque"}``
- ``{"all": [<expr>, ...]}`` / ``{"any": [<expr>, ...]}`` / ``{"not": <expr>}``

Values are always bound parameters; only whitelisted column names are ever
spliced into SQL text.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Final, TypeAlias

if TYPE_CHECKING:
    from enum import StrEnum
else:
    try:
        from enum import StrEnum
    except ImportError:

        class StrEnum(str, Enum):
            """Compatibility fallback for Python < 3.11."""


Scalar: TypeAlias = str | int | float | bool | None
LiteralValue: TypeAlias = Scalar | tuple[Scalar, ...]

_MAX_DEPTH: Final[int] = 8
_MAX_ITEMS: Final[int] = 64


class FilterError(ValueError):
    """Raised when a filter expression is malformed or references unknown fields."""


class FilterOp(StrEnum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    IN = "in"
    NOT_IN = "not_in"
    LIKE = "like"
    IS_NULL = "is_null"
    NOT_NULL = "not_null"


_SQL_OPERATORS: Final[dict[FilterOp, str]] = {
    FilterOp.EQ: "=",
    FilterOp.NE: "<>",
    FilterOp.LT: "<",
    FilterOp.LE: "<=",
    FilterOp.GT: ">",
    FilterOp.GE: ">=",
    FilterOp.LIKE: "LIKE",
}

_UNARY_OPS: Final[frozenset[FilterOp]] = frozenset({FilterOp.IS_NULL, FilterOp.NOT_NULL})
_SET_OPS: Final[frozenset[FilterOp]] = frozenset({FilterOp.IN, FilterOp.NOT_IN})


def _check_scalar(value: object) -> None:
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise FilterError("float literals must be finite")
        return
    raise FilterError(f"unsupported literal type {type(value).__name__}")


def _check_items(items: object, label: str) -> None:
    if not isinstance(items, tuple) or not items:
        raise FilterError(f"'{label}' requires a non-empty list of expressions")
    if len(items) > _MAX_ITEMS:
        raise FilterError(f"'{label}' exceeds {_MAX_ITEMS} expressions")


@dataclass(frozen=True, slots=True)
class Field:
    name: str

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise FilterError("field name must be a non-empty string")
        if not self.name.replace("_", "").isalnum():
            raise FilterError(f"field name {self.name!r} must be alphanumeric/underscore")


@dataclass(frozen=True, slots=True)
class Literal:
    value: LiteralValue = None

    def __post_init__(self) -> None:
        if isinstance(self.value, tuple):
            if len(self.value) > _MAX_ITEMS:
                raise FilterError(f"literal tuple exceeds {_MAX_ITEMS} items")
            for item in self.value:
                _check_scalar(item)
        else:
            _check_scalar(self.value)


@dataclass(frozen=True, slots=True)
class Comparison:
    field: Field
    op: FilterOp
    literal: Literal = Literal()

    def __post_init__(self) -> None:
        value = self.literal.value
        if self.op in _UNARY_OPS:
            if value is not None:
                raise FilterError(f"operator {self.op.value!r} takes no value")
            return
        if self.op in _SET_OPS:
            if not isinstance(value, tuple) or not value:
                raise FilterError(f"operator {self.op.value!r} requires a non-empty list value")
            return
        if isinstance(value, tuple):
            raise FilterError(f"operator {self.op.value!r} requires a scalar value")
        if value is None:
            raise FilterError(
                f"operator {self.op.value!r} cannot compare with null; use is_null/not_null"
            )
        if self.op is FilterOp.LIKE and not isinstance(value, str):
            raise FilterError("operator 'like' requires a string pattern")


@dataclass(frozen=True, slots=True)
class AllOf:
    items: tuple[FilterExpression, ...]

    def __post_init__(self) -> None:
        _check_items(self.items, "all")


@dataclass(frozen=True, slots=True)
class AnyOf:
    items: tuple[FilterExpression, ...]

    def __post_init__(self) -> None:
        _check_items(self.items, "any")


@dataclass(frozen=True, slots=True)
class Not:
    item: FilterExpression


FilterExpression: TypeAlias = Comparison | AllOf | AnyOf | Not


def parse_filter(data: object, *, _depth: int = 0) -> FilterExpression:
    """Build an expression from its canonical mapping form."""

    if _depth > _MAX_DEPTH:
        raise FilterError(f"filter nesting exceeds max depth {_MAX_DEPTH}")
    if not isinstance(data, Mapping):
        raise FilterError(f"filter must be an object, got {type(data).__name__}")

    keys = set(data)
    if keys == {"all"} or keys == {"any"}:
        key = next(iter(keys))
        raw_items = data[key]
        if not isinstance(raw_items, (list, tuple)):
            raise FilterError(f"'{key}' must be a list")
        items = tuple(parse_filter(item, _depth=_depth + 1) for item in raw_items)
        return AllOf(items) if key == "all" else AnyOf(items)
    if keys == {"not"}:
        return Not(parse_filter(data["not"], _depth=_depth + 1))

    if not {"field", "op"} <= keys or not keys <= {"field", "op", "value"}:
        raise FilterError(
            "comparison must have keys 'field', 'op' and optional 'value'; "
            f"got {sorted(str(key) for key in keys)}"
        )
    raw_op = data["op"]
    try:
        op = FilterOp(raw_op)
    except ValueError:
        allowed = ", ".join(item.value for item in FilterOp)
        raise FilterError(f"unknown operator {raw_op!r}; expected one of: {allowed}") from None

    raw_field = data["field"]
    if not isinstance(raw_field, str):
        raise FilterError("'field' must be a string")

    raw_value = data.get("value")
    value: LiteralValue
    if isinstance(raw_value, (list, tuple)):
        value = tuple(raw_value)
    elif isinstance(raw_value, (Mapping, set)):
        raise FilterError("'value' must be a scalar or list of scalars")
    else:
        value = raw_value  # type: ignore[assignment]
    return Comparison(Field(raw_field), op, Literal(value))


def parse_filter_json(raw: str | None) -> FilterExpression | None:
    """Parse the JSON text stored on a rule row; blank text means no condition."""

    if raw is None or not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise FilterError(f"invalid filter JSON: {exc}") from exc
    return parse_filter(data)


def to_mapping(expr: FilterExpression) -> dict[str, object]:
    if isinstance(expr, AllOf):
        return {"all": [to_mapping(item) for item in expr.items]}
    if isinstance(expr, AnyOf):
        return {"any": [to_mapping(item) for item in expr.items]}
    if isinstance(expr, Not):
        return {"not": to_mapping(expr.item)}
    out: dict[str, object] = {"field": expr.field.name, "op": expr.op.value}
    if expr.op not in _UNARY_OPS:
        value = expr.literal.value
        out["value"] = list(value) if isinstance(value, tuple) else value
    return out


def to_json(expr: FilterExpression | None) -> str | None:
    if expr is None:
        return None
    return json.dumps(to_mapping(expr), sort_keys=True, separators=(",", ":"))


def referenced_fields(expr: FilterExpression) -> frozenset[str]:
    if isinstance(expr, (AllOf, AnyOf)):
        out: set[str] = set()
        for item in expr.items:
            out |= referenced_fields(item)
        return frozenset(out)
    if isinstance(expr, Not):
        return referenced_fields(expr.item)
    return frozenset({expr.field.name})


def compile_filter(
    expr: FilterExpression,
    columns: Mapping[str, str],
    *,
    alias: str | None = None,
) -> tuple[str, tuple[Scalar, ...]]:
    """Compile ``expr`` to ``(sql_fragment, params)``.

    ``columns`` maps public field names to column names; any field outside it
    raises :class:`FilterError`.
    """

    params: list[Scalar] = []
    sql = _compile(expr, columns, alias, params)
    return sql, tuple(params)


def _compile(
    expr: FilterExpression,
    columns: Mapping[str, str],
    alias: str | None,
    params: list[Scalar],
) -> str:
    if isinstance(expr, (AllOf, AnyOf)):
        joiner = " AND " if isinstance(expr, AllOf) else " OR "
        parts = [_compile(item, columns, alias, params) for item in expr.items]
        return "(" + joiner.join(parts) + ")"
    if isinstance(expr, Not):
        return f"(NOT {_compile(expr.item, columns, alias, params)})"

    column = columns.get(expr.field.name)
    if column is None:
        allowed = ", ".join(sorted(columns))
        raise FilterError(f"unknown filter field {expr.field.name!r}; expected one of: {allowed}")
    ref = f"{alias}.{column}" if alias else column

    if expr.op is FilterOp.IS_NULL:
        return f"{ref} IS NULL"
    if expr.op is FilterOp.NOT_NULL:
        return f"{ref} IS NOT NULL"
    value = expr.literal.value
    if expr.op in _SET_OPS:
        assert isinstance(value, tuple)
        placeholders = ", ".join("?" for _ in value)
        params.extend(value)
        keyword = "IN" if expr.op is FilterOp.IN else "NOT IN"
        return f"{ref} {keyword} ({placeholders})"
    assert not isinstance(value, tuple)
    params.append(value)
    return f"{ref} {_SQL_OPERATORS[expr.op]} ?"


def parse_filter_sequence(items: Sequence[object]) -> FilterExpression:
    """Conjunction shorthand: a bare list of comparisons means ``all``."""

    if len(items) == 1:
        return parse_filter(items[0])
    return AllOf(tuple(parse_filter(item) for item in items))


__all__ = [
    "AllOf",
    "AnyOf",
    "Comparison",
    "Field",
    "FilterError",
    "FilterExpression",
    "FilterOp",
    "Literal",
    "LiteralValue",
    "Not",
    "Scalar",
    "compile_filter",
    "parse_filter",
    "parse_filter_json",
    "parse_filter_sequence",
    "referenced_fields",
    "to_json",
    "to_mapping",
]
