"""Rename obfuscator-generated ``_0x`` identifiers to ``var_N``.

Renaming is textual: every identifier spelled like a declared ``_0x`` name is
rewritten, regardless of scope.  Generated names are unique per run, so two
distinct bindings sharing one ``_0x`` spelling end up sharing one new name.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator

from ..jsast import node_type, walk
from ..models import StageResult
from . import run_pass

LOG = logging.getLogger(__name__)

KIND = "rename-variables"
PREFIX = "_0x"


def _declared_identifiers(tree) -> Iterator[str]:
    for node in walk(tree):
        kind = node_type(node)
        if kind == "VariableDeclarator" and node_type(node.id) == "Identifier":
            yield node.id.name
        elif kind in ("FunctionDeclaration", "FunctionExpression", "ArrowFunctionExpression"):
            if node_type(node.id) == "Identifier":
                yield node.id.name
            for param in node.params or []:
                if node_type(param) == "Identifier":
                    yield param.name


def build_rename_map(tree) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for name in _declared_identifiers(tree):
        if name.startswith(PREFIX) and name not in mapping:
            mapping[name] = f"var_{len(mapping)}"
    return mapping


def rename_tree(tree) -> int:
    mapping = build_rename_map(tree)
    if not mapping:
        return 0
    for node in walk(tree):
        if node_type(node) == "Identifier" and node.name in mapping:
            node.name = mapping[node.name]
    LOG.debug("renamed %d identifiers", len(mapping))
    return len(mapping)


def run(code: str) -> StageResult:
    return run_pass(KIND, code, rename_tree, lambda count: f"Renamed {count} variables")


__all__ = ["KIND", "build_rename_map", "rename_tree", "run"]
