"""Locate bytecode interpreter loops and classify the VM family."""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Set

from ..exceptions import JSParseError
from ..jsast import children, location, node_type, parse, walk
from ..models import VMFeatures, VMType

LOG = logging.getLogger(__name__)

_LOOP_TYPES = ("WhileStatement", "DoWhileStatement", "ForStatement")
LARGE_ARRAY_SIZE = 50

_REGEX_LOOP_SWITCH = re.compile(
    r"(?:while\s*\([^)]*\)|for\s*\([^)]*;[^)]*;[^)]*\)|do)\s*\{[\s\S]*?switch\s*\("
)
_REGEX_CASE = re.compile(r"\bcase\s+[^:]+:")
_REGEX_BYTECODE_READ = re.compile(r"parseInt\s*\([^)]*\[[^\]]+\][^)]*,\s*16\s*\)")
_REGEX_APPLY = re.compile(r"\.apply\s*\(")
_REGEX_PC = re.compile(r"\b\w+\s*\[\s*\w+\s*\+\+\s*\]|\b(?:pc|ip)\s*(?:\+\+|\+=)")
_REGEX_BIG_ARRAY = re.compile(r"new\s+Array\s*\(|\[(?:[^\[\],]*,){%d,}" % LARGE_ARRAY_SIZE)

_OBFUSCATOR_IO_NAME = re.compile(r"_0x[0-9a-fA-F]+")
_FUNCTION_WRAPPER = re.compile(r"function\s*[\w$]*\s*\(")
_JSFUCK_BODY = re.compile(r"^[\[\]()!+\s;]+$")
_JJENCODE_SIGIL = re.compile(r"\$\s*=\s*~\s*\[\s*\]")


def classify_complexity(instruction_count: int, depth: int) -> str:
    if instruction_count >= 50 or depth >= 3:
        return "high"
    if instruction_count >= 15 or depth >= 2:
        return "medium"
    return "low"


def _switch_depth(node) -> int:
    """Deepest chain of switches nested inside ``node`` (``node`` included)."""

    best = 0
    stack = [(node, 0)]
    while stack:
        current, depth = stack.pop()
        if node_type(current) == "SwitchStatement":
            depth += 1
            best = max(best, depth)
        for child in children(current):
            stack.append((child, depth))
    return best


def _identifier_names(node) -> Set[str]:
    return {item.name for item in walk(node) if node_type(item) == "Identifier"}


def _updated_names(node) -> Set[str]:
    names: Set[str] = set()
    for item in walk(node):
        kind = node_type(item)
        if kind == "UpdateExpression" and node_type(item.argument) == "Identifier":
            names.add(item.argument.name)
        elif kind == "AssignmentExpression" and node_type(item.left) == "Identifier":
            names.add(item.left.name)
    return names


def _has_instruction_array(tree, discriminant) -> bool:
    if node_type(discriminant) == "MemberExpression" and discriminant.computed:
        return True
    for item in walk(tree):
        kind = node_type(item)
        if kind == "NewExpression" and node_type(item.callee) == "Identifier" and item.callee.name == "Array":
            return True
        if kind == "ArrayExpression" and len(item.elements or []) >= LARGE_ARRAY_SIZE:
            return True
    return False


def _interpreter_loops(tree):
    """Yield ``(loop, switch)`` pairs, one per switch found inside a loop."""

    for loop in walk(tree):
        if node_type(loop) not in _LOOP_TYPES:
            continue
        for inner in walk(loop.body, into_functions=False):
            if node_type(inner) == "SwitchStatement":
                yield loop, inner


def detect_jsvmp(code: str) -> Optional[VMFeatures]:
    """Return the features of the largest loop/switch dispatcher, or ``None``.

    Falls back to :func:`detect_jsvmp_with_regex` when ``code`` does not parse.
    """

    try:
        tree = parse(code, loc=True)
    except JSParseError as exc:
        LOG.debug("JSVMP detection falling back to regex: %s", exc)
        return detect_jsvmp_with_regex(code)

    best = None
    for loop, switch in _interpreter_loops(tree):
        count = len(switch.cases or [])
        if best is None or count > len(best[1].cases or []):
            best = (loop, switch)
    if best is None:
        return None

    loop, switch = best
    count = len(switch.cases or [])
    depth = _switch_depth(loop)
    discriminant_names = _identifier_names(switch.discriminant)
    features = VMFeatures(
        instruction_count=count,
        interpreter_location=location(loop),
        complexity=classify_complexity(count, depth),
        has_switch=True,
        has_instruction_array=_has_instruction_array(tree, switch.discriminant),
        has_program_counter=bool(discriminant_names & _updated_names(loop)),
    )
    LOG.debug("interpreter loop at %s: %d cases, depth %d", features.interpreter_location, count, depth)
    return features


def detect_jsvmp_with_regex(code: str) -> Optional[VMFeatures]:
    """Textual fallback for sources the parser rejects."""

    if not _REGEX_LOOP_SWITCH.search(code):
        return None
    count = len(_REGEX_CASE.findall(code))
    return VMFeatures(
        instruction_count=count,
        interpreter_location="unknown",
        complexity=classify_complexity(count, 1),
        has_switch=True,
        has_instruction_array=bool(_REGEX_BYTECODE_READ.search(code) or _REGEX_BIG_ARRAY.search(code)),
        has_program_counter=bool(_REGEX_PC.search(code) or _REGEX_APPLY.search(code)),
    )


def identify_vm_type(code: str, features: Optional[VMFeatures] = None) -> VMType:
    """Signature match over the source text."""

    if _OBFUSCATOR_IO_NAME.search(code) and _FUNCTION_WRAPPER.search(code):
        return VMType.OBFUSCATOR_IO
    stripped = code.strip()
    if stripped and _JSFUCK_BODY.match(stripped):
        return VMType.JSFUCK
    if _JJENCODE_SIGIL.search(code) or "$$$$" in code:
        return VMType.JJENCODE
    return VMType.CUSTOM


def detection_confidence(features: VMFeatures, vm_type: VMType) -> float:
    """Score how strongly ``features`` indicate a bytecode VM (0..1)."""

    score = 0.0
    if features.has_switch:
        score += 0.3
    if features.has_instruction_array:
        score += 0.2
    if features.has_program_counter:
        score += 0.2
    if features.instruction_count >= 10:
        score += 0.1
    if features.instruction_count >= 30:
        score += 0.1
    if features.complexity == "high":
        score += 0.1
    if vm_type is not VMType.CUSTOM:
        score += 0.2
    return round(min(score, 1.0), 2)


__all__: List[str] = [
    "classify_complexity",
    "detect_jsvmp",
    "detect_jsvmp_with_regex",
    "detection_confidence",
    "identify_vm_type",
]
