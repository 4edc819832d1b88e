"""Thin layer over esprima/escodegen used by every AST-based pass.

Trees are esprima node objects.  A pass owns its tree for the duration of one
``parse -> transform -> generate`` cycle; nothing here caches nodes.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Callable, Iterator, List, Optional, Union

import escodegen
import esprima
from esprima import nodes

from .exceptions import JSParseError

LOG = logging.getLogger(__name__)

Node = nodes.Node

# Fields that never hold child nodes worth visiting.
_SKIP_FIELDS = frozenset(
    {
        "type",
        "loc",
        "range",
        "regex",
        "raw",
        "leadingComments",
        "trailingComments",
        "innerComments",
        "comments",
        "tokens",
        "errors",
        "sourceType",
    }
)

# Nested scopes skipped by ``walk(into_functions=False)``.
_FUNCTION_TYPES = frozenset(
    {"FunctionDeclaration", "FunctionExpression", "ArrowFunctionExpression"}
)


def parse(code: str, *, loc: bool = False) -> Node:
    """Parse ``code`` as a script, retrying as a module.

    Raises :class:`JSParseError` with the parser message on failure.
    """

    options = {"loc": True} if loc else {}
    try:
        tree = esprima.parseScript(code, options)
    except Exception as script_exc:  # esprima raises its own Error type
        try:
            tree = esprima.parseModule(code, options)
        except Exception:
            raise JSParseError(str(script_exc)) from script_exc
    _normalise_numeric_literals(tree)
    return tree


def _normalise_numeric_literals(tree: Node) -> None:
    # esprima yields floats for decimal literals; keep integers integral.
    for node in walk(tree):
        if is_numeric_literal(node) and isinstance(node.value, float):
            node.value = normalise_number(node.value)


def generate(tree: Node) -> str:
    """Print ``tree`` back to source."""

    return escodegen.generate(tree)


def is_node(value: Any) -> bool:
    return isinstance(value, Node)


def node_type(value: Any) -> Optional[str]:
    return value.type if is_node(value) else None


def children(node: Node) -> Iterator[Node]:
    """Yield the direct child nodes of ``node``."""

    for key, value in list(vars(node).items()):
        if key in _SKIP_FIELDS:
            continue
        if isinstance(value, list):
            for item in value:
                if is_node(item):
                    yield item
        elif is_node(value):
            yield value


def walk(node: Node, *, into_functions: bool = True) -> Iterator[Node]:
    """Pre-order iteration over ``node`` and its descendants."""

    stack: List[Node] = [node]
    while stack:
        current = stack.pop()
        yield current
        if not into_functions and current is not node and current.type in _FUNCTION_TYPES:
            continue
        kids = list(children(current))
        stack.extend(reversed(kids))


class NodeTransformer:
    """Post-order rewriting visitor.

    ``visit_<Type>`` receives a node whose children were already rewritten and
    returns the replacement.  Returning ``None`` removes the node from a list
    slot; returning a list splices statements into a list slot (and is wrapped
    in a block elsewhere).
    """

    def __init__(self) -> None:
        self.changes = 0

    def visit(self, node: Node) -> Union[Node, List[Node], None]:
        node = self.generic_visit(node)
        handler: Optional[Callable[[Node], Any]] = getattr(self, f"visit_{node.type}", None)
        if handler is None:
            return node
        return handler(node)

    def generic_visit(self, node: Node) -> Node:
        for key, value in list(vars(node).items()):
            if key in _SKIP_FIELDS:
                continue
            if isinstance(value, list):
                setattr(node, key, self._visit_list(value))
            elif is_node(value):
                setattr(node, key, self._visit_slot(value))
        return node

    def _visit_list(self, items: List[Any]) -> List[Any]:
        rewritten: List[Any] = []
        for item in items:
            if not is_node(item):
                rewritten.append(item)
                continue
            result = self.visit(item)
            if result is None:
                continue
            if isinstance(result, list):
                rewritten.extend(result)
            else:
                rewritten.append(result)
        return rewritten

    def _visit_slot(self, value: Node) -> Node:
        result = self.visit(value)
        if result is None:
            return nodes.EmptyStatement() if _is_statement(value) else value
        if isinstance(result, list):
            return nodes.BlockStatement(result)
        return result

    def mark(self, count: int = 1) -> None:
        self.changes += count


def _is_statement(node: Node) -> bool:
    kind = node.type
    return kind.endswith("Statement") or kind.endswith("Declaration")


# ---------------------------------------------------------------------------
# Literal helpers


def is_string_literal(node: Any) -> bool:
    return node_type(node) == "Literal" and isinstance(node.value, str) and getattr(node, "regex", None) is None


def is_boolean_literal(node: Any) -> bool:
    return node_type(node) == "Literal" and isinstance(node.value, bool)


def is_numeric_literal(node: Any) -> bool:
    return (
        node_type(node) == "Literal"
        and isinstance(node.value, (int, float))
        and not isinstance(node.value, bool)
    )


def numeric_value(node: Any) -> Optional[float]:
    """Return the value of a numeric literal or of ``-<numeric literal>``."""

    if is_numeric_literal(node):
        return node.value
    if (
        node_type(node) == "UnaryExpression"
        and node.operator == "-"
        and is_numeric_literal(node.argument)
    ):
        return -node.argument.value
    return None


def normalise_number(value: float) -> Union[int, float]:
    if isinstance(value, float) and value.is_integer() and abs(value) < 2**53:
        return int(value)
    return value


def make_string(value: str) -> Node:
    return nodes.Literal(value, json.dumps(value, ensure_ascii=False))


def make_boolean(value: bool) -> Node:
    return nodes.Literal(value, "true" if value else "false")


def make_number(value: float) -> Node:
    """Build a numeric literal; negative values become ``-<literal>``."""

    value = normalise_number(value)
    if value < 0 or (value == 0 and math.copysign(1.0, value) < 0):
        positive = normalise_number(-value)
        return nodes.UnaryExpression("-", nodes.Literal(positive, str(positive)))
    return nodes.Literal(value, str(value))


def make_identifier(name: str) -> Node:
    return nodes.Identifier(name)


def literal_string_value(source: str) -> str:
    """Evaluate a single quoted JavaScript string literal such as ``'a\\x41'``."""

    tree = parse(f"({source})")
    body = tree.body
    if len(body) != 1 or body[0].type != "ExpressionStatement":
        raise JSParseError(f"not a string literal: {source[:40]!r}")
    expression = body[0].expression
    if not is_string_literal(expression):
        raise JSParseError(f"not a string literal: {source[:40]!r}")
    return expression.value


def member_property_name(node: Node) -> Optional[str]:
    """Return the property name of ``a.b`` / ``a['b']`` member expressions."""

    if node_type(node) != "MemberExpression":
        return None
    prop = node.property
    if not node.computed and node_type(prop) == "Identifier":
        return prop.name
    if node.computed and is_string_literal(prop):
        return prop.value
    return None


def location(node: Node) -> str:
    loc = getattr(node, "loc", None)
    if loc is not None and getattr(loc, "start", None) is not None:
        return f"line {loc.start.line}"
    return "unknown"


__all__ = [
    "Node",
    "NodeTransformer",
    "children",
    "generate",
    "is_boolean_literal",
    "is_node",
    "is_numeric_literal",
    "is_string_literal",
    "literal_string_value",
    "location",
    "make_boolean",
    "make_identifier",
    "make_number",
    "make_string",
    "member_property_name",
    "node_type",
    "normalise_number",
    "numeric_value",
    "parse",
    "walk",
    "nodes",
]
