"""Shared condition evaluation for logic rules and page navigation.

Operator semantics follow the browser runtime the schemas were authored
against: equality is loose, ordering comparisons coerce with JavaScript
``Number()`` rules and containment works on string renderings.

One deliberate departure: a missing field renders as ``""`` for ``contains``
and ``not_contains`` rather than the browser's ``"undefined"``, so a
condition such as ``contains "def"`` never matches an unanswered field.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Mapping

from .schema import Condition, SchemaError

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING: Any = _Missing()

_DECIMAL_PATTERN = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_RADIX_PATTERNS = (
    (re.compile(r"^0[xX][0-9a-fA-F]+$"), 16),
    (re.compile(r"^0[oO][0-7]+$"), 8),
    (re.compile(r"^0[bB][01]+$"), 2),
)
_TRUE_WORDS = {"true", "yes"}
_FALSE_WORDS = {"false", "no"}

OPERATOR_LABELS = {
    "=": "=",
    "!=": "!=",
    ">": ">",
    "<": "<",
    ">=": ">=",
    "<=": "<=",
    "contains": "contains",
    "not_contains": "does not contain",
    "empty": "is empty",
    "not_empty": "is not empty",
}


def js_string(value: Any) -> str:
    if value is MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    if isinstance(value, (list, tuple)):
        return ",".join(js_string(item) for item in value)
    if isinstance(value, Mapping):
        return "[object Object]"
    return str(value)


def to_number(value: Any) -> float:
    """Coerce ``value`` the way JavaScript's ``Number()`` does."""
    if value is MISSING:
        return math.nan
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        if _DECIMAL_PATTERN.match(text):
            return float(text)
        if text in {"Infinity", "+Infinity"}:
            return math.inf
        if text == "-Infinity":
            return -math.inf
        for pattern, base in _RADIX_PATTERNS:
            if pattern.match(text):
                return float(int(text[2:], base))
        return math.nan
    if isinstance(value, (list, tuple)):
        return to_number(js_string(value))
    return math.nan


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_numeric_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip()) and not math.isnan(to_number(value))


def _bool_matches(flag: bool, other: Any) -> bool | None:
    if isinstance(other, str):
        word = other.strip().lower()
        if word in _TRUE_WORDS:
            return flag is True
        if word in _FALSE_WORDS:
            return flag is False
    return None


def loose_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) and isinstance(right, bool):
        return left is right
    if isinstance(left, bool):
        matched = _bool_matches(left, right)
        if matched is not None:
            return matched
    elif isinstance(right, bool):
        matched = _bool_matches(right, left)
        if matched is not None:
            return matched

    if (_is_number(left) or _is_numeric_string(left)) and (_is_number(right) or _is_numeric_string(right)):
        if _is_number(left) or _is_number(right):
            return to_number(left) == to_number(right)

    return js_string(left).lower() == js_string(right).lower()


def is_empty(value: Any) -> bool:
    if value is MISSING or value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def _compare_numbers(left: Any, right: Any, op: str) -> bool:
    a = to_number(left)
    b = to_number(right)
    if math.isnan(a) or math.isnan(b):
        return False
    if op == ">":
        return a > b
    if op == "<":
        return a < b
    if op == ">=":
        return a >= b
    return a <= b


def _evaluate_primary(condition: Condition, values: Mapping[str, Any]) -> bool:
    field_value = values.get(condition.field, MISSING) if condition.field else MISSING
    op = condition.op
    if op == "=":
        return loose_equals(field_value, condition.value)
    if op == "!=":
        return not loose_equals(field_value, condition.value)
    if op in {">", "<", ">=", "<="}:
        return _compare_numbers(field_value, condition.value, op)
    if op == "contains":
        return js_string(condition.value) in js_string(field_value)
    if op == "not_contains":
        return js_string(condition.value) not in js_string(field_value)
    if op == "empty":
        return is_empty(field_value)
    if op == "not_empty":
        return not is_empty(field_value)
    logger.debug("unsupported_condition_operator", extra={"op": op, "field": condition.field})
    return False


def _evaluate(condition: Condition, values: Mapping[str, Any]) -> bool:
    if not condition.field:
        # group-only condition produced by the builder
        if condition.and_:
            return all(_evaluate(item, values) for item in condition.and_)
        if condition.or_:
            return any(_evaluate(item, values) for item in condition.or_)
        return False

    primary = _evaluate_primary(condition, values)
    if condition.and_:
        # `and` wins when both groups are present; `or` is not consulted
        return primary and all(_evaluate(item, values) for item in condition.and_)
    if condition.or_:
        return primary or any(_evaluate(item, values) for item in condition.or_)
    return primary


def evaluate_condition(condition: Condition | Mapping[str, Any] | None, values: Mapping[str, Any]) -> bool:
    if condition is None:
        return False
    try:
        return _evaluate(Condition.from_dict(condition), values)
    except (SchemaError, TypeError, ValueError, AttributeError) as exc:
        logger.debug("condition_evaluation_failed", extra={"condition": repr(condition), "error": str(exc)})
        return False


def _render_value(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except ValueError:
        return repr(value)


def describe_condition(condition: Condition | Mapping[str, Any]) -> str:
    parsed = Condition.from_dict(condition)
    parts: list[str] = []
    if parsed.field:
        label = OPERATOR_LABELS.get(parsed.op or "", parsed.op or "?")
        if parsed.op in {"empty", "not_empty"}:
            parts.append(f"{parsed.field} {label}")
        else:
            parts.append(f"{parsed.field} {label} {_render_value(parsed.value)}")

    if parsed.and_:
        rendered = [describe_condition(item) for item in parsed.and_]
        return " AND ".join(parts + rendered)
    if parsed.or_:
        rendered = [describe_condition(item) for item in parsed.or_]
        return " OR ".join(parts + rendered)
    return parts[0] if parts else "(empty condition)"
