"""Peephole simplification of common minifier idioms."""

from __future__ import annotations

from ..jsast import NodeTransformer, is_numeric_literal, make_boolean, make_identifier, node_type
from ..models import StageResult
from . import run_pass

KIND = "simplify-expressions"


class _Simplifier(NodeTransformer):
    def visit_UnaryExpression(self, node):
        operator = node.operator
        argument = node.argument
        if operator == "!" and node_type(argument) == "UnaryExpression" and argument.operator == "!":
            # Drops the boolean coercion of ``!!x``.
            self.mark()
            return argument.argument
        if operator == "void" and is_numeric_literal(argument) and argument.value == 0:
            self.mark()
            return make_identifier("undefined")
        if operator == "!" and is_numeric_literal(argument):
            self.mark()
            return make_boolean(not argument.value)
        return node

    def visit_SequenceExpression(self, node):
        expressions = node.expressions or []
        if len(expressions) == 1:
            self.mark()
            return expressions[0]
        return node


def simplify_tree(tree) -> int:
    simplifier = _Simplifier()
    simplifier.visit(tree)
    return simplifier.changes


def run(code: str) -> StageResult:
    return run_pass(KIND, code, simplify_tree, lambda count: f"Simplified {count} expressions")


__all__ = ["KIND", "run", "simplify_tree"]
