"""Restricted arithmetic evaluation for the calc tool.

Expressions are parsed with `ast` and walked against an allowlist; nothing is
ever passed to `eval`. Only numeric literals, the arithmetic operators, a
fixed set of math names and calls to allowlisted functions are accepted.
"""
from __future__ import annotations

import ast
import math
import operator
import re
from collections.abc import Mapping
from numbers import Real
from typing import Any

# Characters a calc expression may contain; `^` is accepted as power.
CALC_ALLOWED_CHARS = re.compile(r"^[-+*/()%.\d\s^a-zA-Z,]*$")

CALC_NAMES: Mapping[str, float] = {"pi": math.pi, "PI": math.pi}

CALC_FUNCTIONS: Mapping[str, Any] = {
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "abs": abs,
    "pow": math.pow,
    "sqrt": math.sqrt,
    "log": math.log,
    "exp": math.exp,
    "min": min,
    "max": max,
}

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.FloorDiv: operator.floordiv,
}

_MAX_RECURSION_DEPTH = 100
_MAX_EXPONENT = 1000
_MAX_EXPRESSION_LENGTH = 1000
# Integers wider than a double overflow; reject them like a non-finite float.
_MAX_INT_BITS = 1024


def _check_magnitude(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        if value.bit_length() > _MAX_INT_BITS:
            raise ValueError("result too large")
    return value


def _check_power(base: Any, exponent: Any) -> None:
    if abs(exponent) > _MAX_EXPONENT:
        raise ValueError("exponent too large")
    # Estimate the size before computing; big-int pow cannot be interrupted.
    if isinstance(base, int) and isinstance(exponent, int) and exponent > 0:
        if abs(base).bit_length() * exponent > _MAX_INT_BITS + exponent:
            raise ValueError("result too large")


def _eval_node(
    node: ast.AST,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any],
    _depth: int = 0,
) -> Any:
    if _depth > _MAX_RECURSION_DEPTH:
        raise ValueError("expression too deeply nested")

    if isinstance(node, ast.Expression):
        return _eval_node(node.body, names, allowed_callables, _depth + 1)

    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, Real):
            raise ValueError("only numeric literals are allowed")
        return _check_magnitude(node.value)

    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        raise ValueError(f"unknown name {node.id}")

    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, names, allowed_callables, _depth + 1)
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ValueError("unsupported unary operator")

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ValueError("unsupported binary operator")
        left = _eval_node(node.left, names, allowed_callables, _depth + 1)
        right = _eval_node(node.right, names, allowed_callables, _depth + 1)
        if isinstance(node.op, ast.Pow):
            _check_power(left, right)
        return _check_magnitude(op(left, right))

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name):
            raise ValueError("callable references must be simple names")
        if node.func.id not in allowed_callables:
            raise ValueError(f"function {node.func.id} is not permitted")
        if node.keywords:
            raise ValueError("keyword arguments are not permitted")
        func = allowed_callables[node.func.id]
        args = [
            _eval_node(arg, names, allowed_callables, _depth + 1) for arg in node.args
        ]
        return _check_magnitude(func(*args))

    raise ValueError(f"unsupported expression node: {type(node).__name__}")


def safe_eval_expr(
    expr: str,
    names: Mapping[str, Any] = CALC_NAMES,
    allowed_callables: Mapping[str, Any] = CALC_FUNCTIONS,
) -> float | int:
    """Evaluate an arithmetic expression with a constrained AST allowlist.

    Raises ValueError for disallowed characters, syntax or names, and for
    arithmetic failures such as division by zero or math domain errors.
    """
    if len(expr) > _MAX_EXPRESSION_LENGTH:
        raise ValueError("expression too long")
    if not CALC_ALLOWED_CHARS.match(expr):
        raise ValueError("invalid chars")
    source = expr.replace("^", "**").strip() or "0"
    try:
        parsed = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise ValueError("invalid expression") from exc

    try:
        result = _eval_node(parsed, names, allowed_callables)
    except (ArithmeticError, TypeError) as exc:
        raise ValueError(str(exc) or type(exc).__name__) from exc

    if isinstance(result, bool) or not isinstance(result, Real):
        raise ValueError("expression did not produce a number")
    if isinstance(result, float) and not math.isfinite(result):
        raise ValueError("expression did not produce a finite number")
    return result
