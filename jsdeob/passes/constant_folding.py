"""Constant folding and dead-branch elimination.

Numeric operators follow JavaScript semantics: bitwise and shift operators
work on 32-bit integers, ``/`` and ``%`` by zero and non-finite results are
left alone.
"""

from __future__ import annotations

import math
from typing import Callable, Dict, Optional

from ..jsast import (
    NodeTransformer,
    is_boolean_literal,
    is_string_literal,
    make_number,
    make_string,
    numeric_value,
)
from ..models import StageResult
from . import run_pass

KIND = "basic-ast-transform"


def to_int32(value: float) -> int:
    if not math.isfinite(value):
        return 0
    value = int(value) & 0xFFFFFFFF
    return value - 0x100000000 if value >= 0x80000000 else value


def to_uint32(value: float) -> int:
    if not math.isfinite(value):
        return 0
    return int(value) & 0xFFFFFFFF


def _js_mod(left: float, right: float) -> float:
    # Sign follows the dividend, unlike Python's %.
    return math.fmod(left, right)


def _js_pow(left: float, right: float) -> Optional[float]:
    try:
        result = float(left) ** right
    except (OverflowError, ZeroDivisionError):
        return None
    return None if isinstance(result, complex) else result


_OPERATORS: Dict[str, Callable[[float, float], Optional[float]]] = {
    "+": lambda l, r: l + r,
    "-": lambda l, r: l - r,
    "*": lambda l, r: l * r,
    "/": lambda l, r: l / r if r != 0 else None,
    "%": lambda l, r: _js_mod(l, r) if r != 0 else None,
    "**": _js_pow,
    "|": lambda l, r: to_int32(l) | to_int32(r),
    "&": lambda l, r: to_int32(l) & to_int32(r),
    "^": lambda l, r: to_int32(l) ^ to_int32(r),
    "<<": lambda l, r: to_int32(to_int32(l) << (to_uint32(r) & 31)),
    ">>": lambda l, r: to_int32(l) >> (to_uint32(r) & 31),
    ">>>": lambda l, r: to_uint32(l) >> (to_uint32(r) & 31),
}


def fold_numbers(operator: str, left: float, right: float) -> Optional[float]:
    """Evaluate ``left <operator> right``; ``None`` when it must not fold."""

    handler = _OPERATORS.get(operator)
    if handler is None:
        return None
    try:
        result = handler(left, right)
    except (OverflowError, ValueError):
        return None
    if result is None or not math.isfinite(result):
        return None
    return result


class _Folder(NodeTransformer):
    def visit_BinaryExpression(self, node):
        left = numeric_value(node.left)
        right = numeric_value(node.right)
        if left is not None and right is not None:
            result = fold_numbers(node.operator, left, right)
            if result is not None:
                self.mark()
                return make_number(result)
            return node
        if node.operator == "+" and is_string_literal(node.left) and is_string_literal(node.right):
            self.mark()
            return make_string(node.left.value + node.right.value)
        return node

    def visit_IfStatement(self, node):
        if not is_boolean_literal(node.test):
            return node
        self.mark()
        if node.test.value:
            return node.consequent
        return node.alternate

    def visit_ConditionalExpression(self, node):
        if not is_boolean_literal(node.test):
            return node
        self.mark()
        return node.consequent if node.test.value else node.alternate


def fold(tree) -> int:
    folder = _Folder()
    folder.visit(tree)
    return folder.changes


def run(code: str) -> StageResult:
    return run_pass(
        KIND,
        code,
        fold,
        lambda _: "Constant folding, dead code elimination, string concatenation",
        always_report=True,
    )


__all__ = ["KIND", "fold", "fold_numbers", "run", "to_int32", "to_uint32"]
