"""String-array extraction and inlining for obfuscator.io style output.

Extraction records ``var _0xabc = ["..", ..]`` tables without touching the
code; decryption replaces ``_0xabc[1]`` with the recorded literal.  The table
outlives a single run: an orchestrator shares one :class:`StringArrayTable`
between all of its calls until ``clear_cache()``.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Set, Tuple

from ..jsast import NodeTransformer, is_string_literal, make_string, node_type, numeric_value, walk
from ..models import StageResult, Transformation
from . import run_pass

LOG = logging.getLogger(__name__)

EXTRACT_KIND = "extract-string-arrays"
DECRYPT_KIND = "decrypt-arrays"
ARRAY_PREFIX = "_0x"


class StringArrayTable:
    """Array identifier -> recorded literal strings."""

    def __init__(self) -> None:
        self._arrays: Dict[str, List[str]] = {}

    def __len__(self) -> int:
        return len(self._arrays)

    def __contains__(self, name: object) -> bool:
        return name in self._arrays

    def __iter__(self) -> Iterator[str]:
        return iter(self._arrays)

    def set(self, name: str, strings: List[str]) -> None:
        self._arrays[name] = list(strings)

    def get(self, name: str) -> Optional[List[str]]:
        return self._arrays.get(name)

    def lookup(self, name: str, index: float) -> Optional[str]:
        strings = self._arrays.get(name)
        if strings is None or index != int(index):
            return None
        index = int(index)
        if 0 <= index < len(strings):
            return strings[index]
        return None

    def items(self) -> List[Tuple[str, List[str]]]:
        return list(self._arrays.items())

    def clear(self) -> None:
        self._arrays.clear()


def string_array_declarations(tree) -> Iterator[Tuple[str, List[str]]]:
    """Yield ``(name, strings)`` for each all-string ``_0x`` array declarator."""

    for node in walk(tree):
        if node_type(node) != "VariableDeclarator":
            continue
        if node_type(node.id) != "Identifier" or not node.id.name.startswith(ARRAY_PREFIX):
            continue
        if node_type(node.init) != "ArrayExpression":
            continue
        elements = node.init.elements or []
        if elements and all(is_string_literal(el) for el in elements):
            yield node.id.name, [el.value for el in elements]


def extract(code: str, table: StringArrayTable) -> StageResult:
    """Record string arrays into ``table``; the code is returned untouched."""

    found = 0

    def collect(tree) -> int:
        nonlocal found
        for name, strings in string_array_declarations(tree):
            table.set(name, strings)
            found += 1
            LOG.debug("extracted string array %s (%d strings)", name, len(strings))
        # Nothing to print.
        return 0

    result = run_pass(EXTRACT_KIND, code, collect, lambda _: "")
    if result.ok and found:
        result.transformation = Transformation(EXTRACT_KIND, f"Extracted {found} string arrays", True)
    result.metadata["extracted"] = found
    return result


def assignment_targets(tree) -> Set[int]:
    targets: Set[int] = set()
    for node in walk(tree):
        kind = node_type(node)
        if kind == "AssignmentExpression":
            targets.add(id(node.left))
        elif kind == "UpdateExpression":
            targets.add(id(node.argument))
        elif kind in ("ForInStatement", "ForOfStatement"):
            targets.add(id(node.left))
    return targets


class ArrayInliner(NodeTransformer):
    def __init__(self, table: StringArrayTable, protected: Set[int]) -> None:
        super().__init__()
        self.table = table
        self.protected = protected

    def visit_MemberExpression(self, node):
        if id(node) in self.protected or not node.computed:
            return node
        if node_type(node.object) != "Identifier" or not node.object.name.startswith(ARRAY_PREFIX):
            return node
        index = numeric_value(node.property)
        if index is None:
            return node
        value = self.table.lookup(node.object.name, index)
        if value is None:
            return node
        self.mark()
        return make_string(value)


def inline_arrays(tree, table: StringArrayTable) -> int:
    inliner = ArrayInliner(table, assignment_targets(tree))
    inliner.visit(tree)
    return inliner.changes


def decrypt(code: str, table: StringArrayTable) -> StageResult:
    """Replace in-range ``name[index]`` reads with their literal."""

    if not len(table):
        return StageResult(code=code)
    return run_pass(
        DECRYPT_KIND,
        code,
        lambda tree: inline_arrays(tree, table),
        lambda count: f"Replaced {count} array references",
    )


__all__ = [
    "ARRAY_PREFIX",
    "ArrayInliner",
    "DECRYPT_KIND",
    "EXTRACT_KIND",
    "StringArrayTable",
    "assignment_targets",
    "decrypt",
    "extract",
    "inline_arrays",
    "string_array_declarations",
]
