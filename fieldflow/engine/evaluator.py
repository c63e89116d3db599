"""Field-expression evaluation.

Formulas reference same-record fields as ``{fieldId}`` and are parsed with
``ast`` into a small whitelisted expression language; nothing is passed to
``eval``. Runtime type mismatches and division by zero evaluate to ``None``
the way an empty cell would; arithmetic needs numbers, except that ``+``
also joins two strings or two lists. Syntax errors and unsupported constructs
raise ``FormulaError``.
"""

from __future__ import annotations

import ast
import math
import operator
from functools import lru_cache
from typing import Any, Callable, Protocol

from fieldflow.engine.errors import FatalPlanError, FormulaError
from fieldflow.engine.fields import (
    FIELD_REFERENCE_RE,
    FieldDefinition,
    FormulaField,
    LookupField,
    RollupField,
)


class FieldEvaluator(Protocol):
    def evaluate(
        self,
        definition: FieldDefinition,
        record: dict[str, Any],
        linked: list[dict[str, Any]],
    ) -> Any:
        ...


MAX_EXPONENT = 1024

_BINARY_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _operands_allowed(op: ast.operator, left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return True
    if isinstance(op, ast.Add):
        return (isinstance(left, str) and isinstance(right, str)) or (
            isinstance(left, list) and isinstance(right, list)
        )
    return False


def _numbers(values: list[Any]) -> list[float | int]:
    return [value for value in values if _is_number(value)]


def _round(value: Any, digits: Any = 0) -> Any:
    if not _is_number(value):
        return None
    return round(value, int(digits or 0))


def _concat(*values: Any) -> str:
    return "".join("" if value is None else str(value) for value in values)


def _min(*values: Any) -> Any:
    numbers = _numbers(list(values))
    return min(numbers) if numbers else None


def _max(*values: Any) -> Any:
    numbers = _numbers(list(values))
    return max(numbers) if numbers else None


def _sum(*values: Any) -> Any:
    return sum(_numbers(list(values)))


def _abs(value: Any) -> Any:
    return abs(value) if _is_number(value) else None


FORMULA_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "ROUND": _round,
    "ABS": _abs,
    "MIN": _min,
    "MAX": _max,
    "SUM": _sum,
    "CONCAT": _concat,
}


def _variable(index: int) -> str:
    return f"_ref{index}"


@lru_cache(maxsize=512)
def compile_formula(expression: str) -> tuple[ast.Expression, tuple[str, ...]]:
    """Parse ``expression`` once and validate every node against the whitelist."""

    references: list[str] = []

    def substitute(match: Any) -> str:
        field_id = match.group(1)
        if field_id not in references:
            references.append(field_id)
        return _variable(references.index(field_id))

    source = FIELD_REFERENCE_RE.sub(substitute, expression.strip())
    if not source:
        raise FormulaError(f"empty formula expression: {expression!r}")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise FormulaError(f"formula syntax error in {expression!r}: {exc.msg}") from exc
    names = {_variable(index) for index in range(len(references))}
    called = {
        id(node.func)
        for node in ast.walk(tree)
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name)
    }
    function_names = {*FORMULA_FUNCTIONS, "IF"}
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and node.id.upper() in function_names and id(node) not in called:
            raise FormulaError(f"function {node.id!r} used without a call in {expression!r}")
        if isinstance(node, ast.Name) and node.id not in names and node.id.upper() not in {
            "TRUE",
            "FALSE",
            *FORMULA_FUNCTIONS,
            "IF",
        }:
            raise FormulaError(f"unknown identifier {node.id!r} in {expression!r}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.keywords:
                raise FormulaError(f"unsupported call in {expression!r}")
            if node.func.id.upper() not in FORMULA_FUNCTIONS and node.func.id.upper() != "IF":
                raise FormulaError(f"unknown function {node.func.id!r} in {expression!r}")
        if isinstance(
            node,
            (
                ast.Attribute,
                ast.Subscript,
                ast.Lambda,
                ast.IfExp,
                ast.ListComp,
                ast.SetComp,
                ast.DictComp,
                ast.GeneratorExp,
                ast.Starred,
                ast.NamedExpr,
            ),
        ):
            raise FormulaError(f"unsupported expression {type(node).__name__} in {expression!r}")
    return tree, tuple(references)


class _FormulaInterpreter:
    def __init__(self, variables: dict[str, Any]) -> None:
        self.variables = variables

    def visit(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self.visit(node.body)
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id in self.variables:
                return self.variables[node.id]
            return node.id.upper() == "TRUE"
        if isinstance(node, ast.UnaryOp):
            operand = self.visit(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if not _is_number(operand):
                return None
            return -operand if isinstance(node.op, ast.USub) else +operand
        if isinstance(node, ast.BinOp):
            left = self.visit(node.left)
            right = self.visit(node.right)
            if left is None or right is None:
                return None
            op = _BINARY_OPS.get(type(node.op))
            if op is None:
                raise FormulaError(f"unsupported operator {type(node.op).__name__}")
            if not _operands_allowed(node.op, left, right):
                return None
            if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
                return None
            try:
                result = op(left, right)
            except (TypeError, ZeroDivisionError, OverflowError):
                return None
            if isinstance(result, float) and not math.isfinite(result):
                return None
            return result
        if isinstance(node, ast.BoolOp):
            values = [self.visit(value) for value in node.values]
            if isinstance(node.op, ast.And):
                return all(values)
            return any(values)
        if isinstance(node, ast.Compare):
            left = self.visit(node.left)
            for op_node, comparator in zip(node.ops, node.comparators):
                right = self.visit(comparator)
                op = _COMPARE_OPS.get(type(op_node))
                if op is None:
                    raise FormulaError(f"unsupported comparison {type(op_node).__name__}")
                try:
                    if not op(left, right):
                        return False
                except TypeError:
                    return None
                left = right
            return True
        if isinstance(node, ast.Call):
            name = node.func.id.upper()
            if name == "IF":
                if len(node.args) not in (2, 3):
                    raise FormulaError("IF expects 2 or 3 arguments")
                if self.visit(node.args[0]):
                    return self.visit(node.args[1])
                return self.visit(node.args[2]) if len(node.args) == 3 else None
            args = [self.visit(arg) for arg in node.args]
            try:
                return FORMULA_FUNCTIONS[name](*args)
            except TypeError as exc:
                raise FormulaError(f"bad arguments for {name}: {exc}") from exc
        raise FormulaError(f"unsupported expression {type(node).__name__}")


def evaluate_formula(expression: str, values: dict[str, Any]) -> Any:
    tree, references = compile_formula(expression)
    variables = {_variable(index): values.get(field_id) for index, field_id in enumerate(references)}
    return _FormulaInterpreter(variables).visit(tree)


def flatten_values(values: list[Any]) -> list[Any]:
    flat: list[Any] = []
    for value in values:
        if value is None:
            continue
        if isinstance(value, list):
            flat.extend(item for item in value if item is not None)
        else:
            flat.append(value)
    return flat


def rollup(function: str, values: list[Any]) -> Any:
    flat = flatten_values(values)
    numbers = _numbers(flat)
    if function == "sum":
        return sum(numbers)
    if function == "count":
        return len(numbers)
    if function == "counta":
        return len([value for value in flat if value != ""])
    if function == "average":
        return sum(numbers) / len(numbers) if numbers else None
    if function == "max":
        return max(numbers) if numbers else None
    if function == "min":
        return min(numbers) if numbers else None
    if function == "concatenate":
        return ", ".join(str(value) for value in flat)
    if function == "array_unique":
        unique: list[Any] = []
        for value in flat:
            if value not in unique:
                unique.append(value)
        return unique
    raise FatalPlanError(f"unknown rollup function {function!r}", reason_code="formula_error")


class BasicFieldEvaluator:
    """Deterministic local evaluator for formula, lookup and rollup fields."""

    def evaluate(
        self,
        definition: FieldDefinition,
        record: dict[str, Any],
        linked: list[dict[str, Any]],
    ) -> Any:
        if isinstance(definition, FormulaField):
            return evaluate_formula(definition.expression, record)
        if isinstance(definition, LookupField):
            return flatten_values([item.get(definition.target_field_id) for item in linked])
        if isinstance(definition, RollupField):
            return rollup(definition.function, [item.get(definition.target_field_id) for item in linked])
        raise FatalPlanError(
            f"{definition.table_id}.{definition.field_id} is not a computed field",
            reason_code="not_computed_field",
        )
