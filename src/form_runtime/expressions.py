from __future__ import annotations

import ast
import math
import re
from collections import ChainMap
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Any, Callable, Mapping

from .conditions import js_string, to_number

ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.And,
    ast.Or,
    ast.Not,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Mod,
    ast.Pow,
    ast.USub,
    ast.UAdd,
    ast.Eq,
    ast.NotEq,
    ast.Gt,
    ast.GtE,
    ast.Lt,
    ast.LtE,
    ast.Call,
)

_BINARY_OPERATORS = {ast.Add: "+", ast.Sub: "-", ast.Mult: "*", ast.Div: "/", ast.Mod: "%", ast.Pow: "^"}
_UNARY_OPERATORS = {ast.USub: "-", ast.UAdd: "+", ast.Not: "not"}
_COMPARE_OPERATORS = {ast.Eq: "==", ast.NotEq: "!=", ast.Gt: ">", ast.GtE: ">=", ast.Lt: "<", ast.LtE: "<="}
_NUMERIC_PREFIX = re.compile(r"^-?(\d+\.?\d*|\.\d+)")
_NON_NUMERIC_CHARS = re.compile(r"[^0-9.\-]")
# `^` is power in the formula language; quoted strings are left alone
_CARET_OR_STRING = re.compile(r"('[^']*'|\"[^\"]*\")|\^")


class FormulaError(ValueError):
    """Raised when a formula cannot be parsed or evaluated."""


class UnsafeExpressionError(FormulaError):
    """Raised when the formula includes syntax outside the formula language."""


class UnknownIdentifierError(FormulaError):
    """Raised when a formula references a name with no binding."""


@dataclass(slots=True, frozen=True)
class Literal:
    value: Any


@dataclass(slots=True, frozen=True)
class Identifier:
    name: str


@dataclass(slots=True, frozen=True)
class UnaryOp:
    op: str
    operand: Node


@dataclass(slots=True, frozen=True)
class BinaryOp:
    op: str
    left: Node
    right: Node


@dataclass(slots=True, frozen=True)
class Compare:
    op: str
    left: Node
    right: Node


@dataclass(slots=True, frozen=True)
class BoolOp:
    op: str
    operands: tuple[Node, ...]


@dataclass(slots=True, frozen=True)
class Call:
    function: str
    args: tuple[Node, ...]


Node = Literal | Identifier | UnaryOp | BinaryOp | Compare | BoolOp | Call


@dataclass(slots=True, frozen=True)
class FormulaProgram:
    """Parsed formula that can be evaluated repeatedly against new bindings."""

    source: str
    root: Node
    identifiers: frozenset[str]


def parse_numeric(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        match = _NUMERIC_PREFIX.match(_NON_NUMERIC_CHARS.sub("", value))
        return float(match.group(0)) if match else 0
    return 0


def _flatten_numbers(args: tuple[Any, ...]) -> list[Any]:
    items: list[Any] = []
    for arg in args:
        if isinstance(arg, (list, tuple)):
            items.extend(parse_numeric(item) for item in arg)
        else:
            items.append(parse_numeric(arg))
    return items


def _sum(*args: Any) -> Any:
    return sum(_flatten_numbers(args))


def _avg(*args: Any) -> Any:
    items = _flatten_numbers(args)
    return sum(items) / len(items) if items else 0


def _min(*args: Any) -> Any:
    items = _flatten_numbers(args)
    return min(items) if items else 0


def _max(*args: Any) -> Any:
    items = _flatten_numbers(args)
    return max(items) if items else 0


def _count(*args: Any) -> int:
    return sum(len(arg) if isinstance(arg, (list, tuple)) else 1 for arg in args)


def _len(value: Any) -> int:
    return len(value) if isinstance(value, (list, tuple, str)) else 0


def _round(value: Any, digits: Any = 0) -> Any:
    places = int(to_number(digits))
    number = _as_number(value, "ROUND")
    if places == 0:
        return int(math.floor(number + 0.5))
    scale = 10**places
    return math.floor(number * scale + 0.5) / scale


def _abs(value: Any) -> Any:
    return abs(_as_number(value, "ABS"))


def _floor(value: Any) -> int:
    return int(math.floor(_as_number(value, "FLOOR")))


def _ceil(value: Any) -> int:
    return int(math.ceil(_as_number(value, "CEIL")))


FUNCTIONS: dict[str, tuple[Callable[..., Any], int, int | None]] = {
    "SUM": (_sum, 1, None),
    "AVG": (_avg, 1, None),
    "MIN": (_min, 1, None),
    "MAX": (_max, 1, None),
    "COUNT": (_count, 1, None),
    "LEN": (_len, 1, 1),
    "ROUND": (_round, 1, 2),
    "ABS": (_abs, 1, 1),
    "FLOOR": (_floor, 1, 1),
    "CEIL": (_ceil, 1, 1),
    "IF": (lambda *args: None, 3, 3),
}


def _validate_ast(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, ALLOWED_NODES):
            raise UnsafeExpressionError(f"Unsupported expression node: {type(node).__name__}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id.upper() not in FUNCTIONS:
                raise UnsafeExpressionError("Unsupported function call")
            if node.keywords:
                raise UnsafeExpressionError("Keyword arguments are not supported")
        if isinstance(node, ast.Constant) and not isinstance(node.value, (int, float, str)):
            raise UnsafeExpressionError(f"Unsupported literal: {node.value!r}")


def _convert(node: ast.AST) -> Node:
    if isinstance(node, ast.Expression):
        return _convert(node.body)
    if isinstance(node, ast.Constant):
        return Literal(node.value)
    if isinstance(node, ast.Name):
        return Identifier(node.id)
    if isinstance(node, ast.UnaryOp):
        return UnaryOp(_UNARY_OPERATORS[type(node.op)], _convert(node.operand))
    if isinstance(node, ast.BinOp):
        return BinaryOp(_BINARY_OPERATORS[type(node.op)], _convert(node.left), _convert(node.right))
    if isinstance(node, ast.BoolOp):
        return BoolOp("and" if isinstance(node.op, ast.And) else "or", tuple(_convert(item) for item in node.values))
    if isinstance(node, ast.Compare):
        # a < b < c becomes (a < b) and (b < c)
        operands = [_convert(node.left), *(_convert(item) for item in node.comparators)]
        links = tuple(
            Compare(_COMPARE_OPERATORS[type(op)], operands[index], operands[index + 1])
            for index, op in enumerate(node.ops)
        )
        return links[0] if len(links) == 1 else BoolOp("and", links)
    if isinstance(node, ast.Call):
        name = node.func.id.upper()  # type: ignore[attr-defined]
        _, min_args, max_args = FUNCTIONS[name]
        if len(node.args) < min_args or (max_args is not None and len(node.args) > max_args):
            raise FormulaError(f"{name} called with {len(node.args)} argument(s)")
        return Call(name, tuple(_convert(item) for item in node.args))
    raise UnsafeExpressionError(f"Unsupported expression node: {type(node).__name__}")


def _collect_identifiers(node: Node, found: set[str]) -> None:
    if isinstance(node, Identifier):
        found.add(node.name)
    elif isinstance(node, UnaryOp):
        _collect_identifiers(node.operand, found)
    elif isinstance(node, (BinaryOp, Compare)):
        _collect_identifiers(node.left, found)
        _collect_identifiers(node.right, found)
    elif isinstance(node, BoolOp):
        for item in node.operands:
            _collect_identifiers(item, found)
    elif isinstance(node, Call):
        for item in node.args:
            _collect_identifiers(item, found)


@lru_cache(maxsize=512)
def compile_formula(formula: str) -> FormulaProgram:
    source = str(formula).strip()
    if not source:
        raise FormulaError("formula is empty")
    try:
        tree = ast.parse(_CARET_OR_STRING.sub(lambda match: match.group(1) or "**", source), mode="eval")
    except SyntaxError as exc:
        raise FormulaError(f"invalid formula syntax: {exc.msg}") from exc
    _validate_ast(tree)
    root = _convert(tree)
    identifiers: set[str] = set()
    _collect_identifiers(root, identifiers)
    return FormulaProgram(source=source, root=root, identifiers=frozenset(identifiers))


def extract_formula_identifiers(formula: str) -> set[str]:
    return set(compile_formula(formula).identifiers)


def _truthy(value: Any) -> bool:
    if isinstance(value, float) and math.isnan(value):
        return False
    if isinstance(value, (list, tuple)):
        return True
    return bool(value)


def _as_number(value: Any, where: str) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if isinstance(value, (list, tuple)):
        raise FormulaError(f"{where} expects a number, got a list")
    return to_number(value)


def _arithmetic(op: str, left: Any, right: Any) -> Any:
    if op == "+" and (isinstance(left, str) or isinstance(right, str)):
        return js_string(left) + js_string(right)
    a = _as_number(left, f"'{op}'")
    b = _as_number(right, f"'{op}'")
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "^":
        try:
            return math.pow(a, b)
        except (OverflowError, ValueError) as exc:
            raise FormulaError(f"cannot raise {a} to the power {b}") from exc
    if b == 0:
        raise FormulaError("division by zero")
    if op == "/":
        return a / b
    remainder = math.fmod(a, b)
    return int(remainder) if isinstance(a, int) and isinstance(b, int) else remainder


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    a = to_number(left)
    b = to_number(right)
    if math.isnan(a) or math.isnan(b):
        return False
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    if op == "<":
        return a < b
    return a <= b


def _eval(node: Node, bindings: Mapping[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Identifier):
        if node.name not in bindings:
            raise UnknownIdentifierError(f"unknown identifier: {node.name}")
        return bindings[node.name]
    if isinstance(node, UnaryOp):
        operand = _eval(node.operand, bindings)
        if node.op == "not":
            return not _truthy(operand)
        number = _as_number(operand, f"unary '{node.op}'")
        return -number if node.op == "-" else number
    if isinstance(node, BinaryOp):
        return _arithmetic(node.op, _eval(node.left, bindings), _eval(node.right, bindings))
    if isinstance(node, Compare):
        return _compare(node.op, _eval(node.left, bindings), _eval(node.right, bindings))
    if isinstance(node, BoolOp):
        if node.op == "and":
            return all(_truthy(_eval(item, bindings)) for item in node.operands)
        return any(_truthy(_eval(item, bindings)) for item in node.operands)
    if isinstance(node, Call):
        if node.function == "IF":
            condition, when_true, when_false = node.args
            branch = when_true if _truthy(_eval(condition, bindings)) else when_false
            return _eval(branch, bindings)
        function = FUNCTIONS[node.function][0]
        return function(*(_eval(item, bindings) for item in node.args))
    raise FormulaError(f"cannot evaluate node {node!r}")


def evaluate_program(program: FormulaProgram, bindings: Mapping[str, Any]) -> Any:
    return _eval(program.root, bindings)


def evaluate_formula(formula: str, bindings: Mapping[str, Any]) -> Any:
    return evaluate_program(compile_formula(formula), bindings)


def bind_value(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return list(value)
    return parse_numeric(value)


def matrix_column_bindings(values: Mapping[str, Any]) -> dict[str, list[Any]]:
    columns: dict[str, list[Any]] = {}
    for key, value in values.items():
        if not isinstance(value, (list, tuple)) or not value or not isinstance(value[0], Mapping):
            continue
        for column in value[0]:
            columns[f"{key}_{column}"] = [row.get(column) if isinstance(row, Mapping) else None for row in value]
    return columns


def build_bindings(values: Mapping[str, Any], computed: Mapping[str, Any] | None = None) -> ChainMap[str, Any]:
    """Bindings resolve computed outputs first, then field values, then matrix columns."""
    return ChainMap(
        {key: bind_value(value) for key, value in (computed or {}).items()},
        {key: bind_value(value) for key, value in values.items()},
        matrix_column_bindings(values),
    )


def _half_up(number: float, places: int) -> Decimal:
    return Decimal(number).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def format_currency(value: Any) -> str:
    number = to_number(value)
    if math.isnan(number):
        return "$NaN"
    if math.isinf(number):
        return "-$∞" if number < 0 else "$∞"
    amount = _half_up(number, 2)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def format_percentage(value: Any) -> str:
    number = to_number(value) * 100
    if math.isnan(number) or math.isinf(number):
        return f"{js_string(number)}%"
    return f"{_half_up(number, 2):.2f}%"


def format_output(value: Any, fmt: str | None) -> Any:
    if fmt == "currency":
        return format_currency(value)
    if fmt == "percentage":
        return format_percentage(value)
    if fmt == "number":
        number = to_number(value)
        return int(number) if math.isfinite(number) and number.is_integer() else number
    if fmt == "text":
        return js_string(value)
    return value
