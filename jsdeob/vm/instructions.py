"""Turn the cases of a dispatcher switch into :class:`VMInstruction` records."""

from __future__ import annotations

import logging
from typing import List, Optional

from ..jsast import member_property_name, node_type, numeric_value, parse, walk
from ..models import VMFeatures, VMInstruction

LOG = logging.getLogger(__name__)

STACK_METHODS = frozenset({"push", "pop", "shift", "unshift"})
_BRANCH_TYPES = frozenset(
    {"IfStatement", "ConditionalExpression", "SwitchStatement", "ContinueStatement", "ReturnStatement", "ThrowStatement"}
)


def _dispatcher(tree):
    """The switch with the most cases in ``tree``."""

    best = None
    for node in walk(tree):
        if node_type(node) == "SwitchStatement":
            if best is None or len(node.cases or []) > len(best.cases or []):
                best = node
    return best


def _opcode(test):
    if test is None:
        return "default"
    if node_type(test) == "Literal":
        value = numeric_value(test)
        if value is not None:
            return int(value) if float(value).is_integer() else value
        return test.value
    value = numeric_value(test)
    if value is not None:
        return int(value) if float(value).is_integer() else value
    if node_type(test) == "Identifier":
        return test.name
    return "expression"


def infer_instruction_type(case) -> str:
    """Classify a ``case`` body: stack-op, branch, assign, call or unknown."""

    statements = case.consequent or []
    nodes = [node for statement in statements for node in walk(statement)]
    for node in nodes:
        if node_type(node) == "CallExpression" and member_property_name(node.callee) in STACK_METHODS:
            return "stack-op"
    for statement in statements:
        for node in walk(statement):
            kind = node_type(node)
            if kind in _BRANCH_TYPES:
                return "branch"
            # A break nested below the case body is a jump, not a terminator.
            if kind == "BreakStatement" and node is not statement:
                return "branch"
    for node in nodes:
        if node_type(node) == "AssignmentExpression":
            return "assign"
    for node in nodes:
        if node_type(node) in ("CallExpression", "NewExpression"):
            return "call"
    return "unknown"


def extract_instructions(code: str, features: Optional[VMFeatures] = None) -> List[VMInstruction]:
    """One instruction per case of the largest switch; empty when none parse."""

    tree = parse(code)
    switch = _dispatcher(tree)
    if switch is None:
        return []
    instructions: List[VMInstruction] = []
    for case in switch.cases or []:
        opcode = _opcode(case.test)
        kind = infer_instruction_type(case)
        size = len(case.consequent or [])
        instructions.append(
            VMInstruction(
                opcode=opcode,
                name=f"OP_{opcode}",
                type=kind,
                description=f"{kind} handler with {size} statement{'s' if size != 1 else ''}",
            )
        )
    if features is not None and features.instruction_count and len(instructions) != features.instruction_count:
        LOG.debug("dispatcher has %d cases, detector counted %d", len(instructions), features.instruction_count)
    return instructions


__all__ = ["STACK_METHODS", "extract_instructions", "infer_instruction_type"]
