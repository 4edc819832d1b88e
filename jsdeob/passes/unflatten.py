"""Undo switch-dispatch control-flow flattening.

Recognises the obfuscator.io shape::

    var order = "1|0|2".split("|"), i = 0;
    while (true) {
        switch (order[i++]) {
            case "0": a(); continue;
            case "1": b(); continue;
            case "2": c(); continue;
        }
        break;
    }

and replaces the loop with the case bodies in dispatch order.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..jsast import NodeTransformer, is_string_literal, node_type, numeric_value, walk
from ..models import StageResult
from . import run_pass

LOG = logging.getLogger(__name__)

KIND = "unflatten-control-flow"


def _dispatch_orders(tree) -> Dict[str, List[str]]:
    """Map ``name`` to its order for every ``name = "a|b".split("|")`` declarator."""

    orders: Dict[str, List[str]] = {}
    for node in walk(tree):
        if node_type(node) != "VariableDeclarator" or node_type(node.id) != "Identifier":
            continue
        order = split_order(node.init)
        if order is not None and node.id.name not in orders:
            orders[node.id.name] = order
    return orders


def split_order(init) -> Optional[List[str]]:
    if node_type(init) != "CallExpression":
        return None
    callee = init.callee
    if node_type(callee) != "MemberExpression" or not is_string_literal(callee.object):
        return None
    prop = callee.property
    if callee.computed or node_type(prop) != "Identifier" or prop.name != "split":
        return None
    args = init.arguments or []
    if len(args) != 1 or not is_string_literal(args[0]) or args[0].value != "|":
        return None
    return callee.object.value.split("|")


def _dispatcher_switch(loop):
    body = loop.body
    if node_type(body) == "SwitchStatement":
        return body
    if node_type(body) != "BlockStatement":
        return None
    statements = body.body or []
    if len(statements) == 1 and node_type(statements[0]) == "SwitchStatement":
        return statements[0]
    if (
        len(statements) == 2
        and node_type(statements[0]) == "SwitchStatement"
        and node_type(statements[1]) == "BreakStatement"
        and statements[1].label is None
    ):
        return statements[0]
    return None


def _case_key(test) -> Optional[str]:
    if is_string_literal(test):
        return test.value
    value = numeric_value(test)
    if value is not None and value == int(value):
        return str(int(value))
    return None


class _Unflattener(NodeTransformer):
    def __init__(self, orders: Dict[str, List[str]]) -> None:
        super().__init__()
        self.orders = orders

    def visit_WhileStatement(self, node):
        switch = _dispatcher_switch(node)
        if switch is None:
            return node
        discriminant = switch.discriminant
        if node_type(discriminant) != "MemberExpression" or node_type(discriminant.object) != "Identifier":
            return node
        order = self.orders.get(discriminant.object.name)
        if order is None:
            return node
        cases = {}
        for case in switch.cases or []:
            key = _case_key(case.test)
            if key is not None and key not in cases:
                cases[key] = case
        statements = []
        for step in order:
            case = cases.get(step.strip())
            if case is None:
                continue
            for statement in case.consequent or []:
                if node_type(statement) in ("BreakStatement", "ContinueStatement"):
                    continue
                statements.append(statement)
        if not statements:
            return node
        LOG.debug("unflattened dispatcher over %s (%d steps)", discriminant.object.name, len(order))
        self.mark()
        return statements


def unflatten_tree(tree) -> int:
    transformer = _Unflattener(_dispatch_orders(tree))
    transformer.visit(tree)
    return transformer.changes


def run(code: str) -> StageResult:
    return run_pass(KIND, code, unflatten_tree, lambda count: f"Unflattened {count} control flow patterns")


__all__ = ["KIND", "run", "split_order", "unflatten_tree"]
