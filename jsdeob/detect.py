"""Cheap, independent heuristics tagging the obfuscation techniques in a sample."""

from __future__ import annotations

import logging
import re
from typing import Callable, List, Set, Tuple

from .models import ObfuscationType
from .unpackers import AAEncodeDeobfuscator, PackerDeobfuscator, URLEncodeDeobfuscator

LOG = logging.getLogger(__name__)

_OBFUSCATOR_VAR_RE = re.compile(r"var\s+_0x[a-f0-9]+\s*=")
_INVISIBLE_RE = re.compile(r"[\u200b-\u200f\u2028-\u202f\ufeff]")
_FLATTENING_RES = (
    re.compile(r"while\s*\([^)]*\)\s*\{?\s*switch\s*\("),
    re.compile(r"while\s*\(\s*!!\s*\[\s*\]\s*\)\s*\{?\s*switch"),
)
_OPAQUE_RE = re.compile(r"""if\s*\(\s*typeof\s+\w+\s*[!=]==?\s*['"]undefined['"]\s*\)""")
_DEAD_CODE_RE = re.compile(r"if\s*\(\s*false\s*\)|if\s*\(\s*![1!]\s*\)")
_ROTATION_RE = re.compile(
    r"\(\s*function\s*\(\s*_0x[a-f0-9]+\s*,\s*_0x[a-f0-9]+\s*\).*?push\s*\(\s*.*?shift\s*\(\s*\)"
)
_JSFUCK_RE = re.compile(r"^\s*[\[\]()!+]+\s*$")
_EVAL_RES = (
    re.compile(r"""eval\s*\(\s*['"`]"""),
    re.compile(r"eval\s*\(\s*atob\s*\("),
)
_HEX_RE = re.compile(r"\\x[0-9a-fA-F]{2}")
_BASE64_CALL_RE = re.compile(r"atob\s*\(|btoa\s*\(")
_BASE64_RUN_RE = re.compile(r"[A-Za-z0-9+/]{20,}={0,2}")

UGLIFY_MIN_LENGTH = 1000
JSFUCK_PREFIX = 200


def _javascript_obfuscator(code: str) -> bool:
    return "_0x" in code or bool(_OBFUSCATOR_VAR_RE.search(code))


def _webpack(code: str) -> bool:
    return "__webpack_require__" in code or "webpackJsonp" in code


def _uglify(code: str) -> bool:
    return len(code) > UGLIFY_MIN_LENGTH and "\n" not in code


def _vm_protection(code: str) -> bool:
    return "eval" in code and "Function" in code


def _invisible_unicode(code: str) -> bool:
    return bool(_INVISIBLE_RE.search(code))


def _control_flow_flattening(code: str) -> bool:
    return any(pattern.search(code) for pattern in _FLATTENING_RES)


def _opaque_predicates(code: str) -> bool:
    return bool(_OPAQUE_RE.search(code)) and "_0x" in code


def _dead_code_injection(code: str) -> bool:
    return bool(_DEAD_CODE_RE.search(code))


def _string_array_rotation(code: str) -> bool:
    return bool(_ROTATION_RE.search(code))


def _jsfuck(code: str) -> bool:
    return bool(_JSFUCK_RE.match(code[:JSFUCK_PREFIX]))


def _eval_obfuscation(code: str) -> bool:
    return any(pattern.search(code) for pattern in _EVAL_RES)


def _hex_encoding(code: str) -> bool:
    return bool(_HEX_RE.search(code))


def _base64_encoding(code: str) -> bool:
    return bool(_BASE64_CALL_RE.search(code)) and bool(_BASE64_RUN_RE.search(code))


HEURISTICS: List[Tuple[ObfuscationType, Callable[[str], bool]]] = [
    (ObfuscationType.JAVASCRIPT_OBFUSCATOR, _javascript_obfuscator),
    (ObfuscationType.WEBPACK, _webpack),
    (ObfuscationType.UGLIFY, _uglify),
    (ObfuscationType.VM_PROTECTION, _vm_protection),
    (ObfuscationType.PACKER, PackerDeobfuscator.detect),
    (ObfuscationType.AAENCODE, AAEncodeDeobfuscator.detect),
    (ObfuscationType.URLENCODED, URLEncodeDeobfuscator.detect),
    (ObfuscationType.INVISIBLE_UNICODE, _invisible_unicode),
    (ObfuscationType.CONTROL_FLOW_FLATTENING, _control_flow_flattening),
    (ObfuscationType.OPAQUE_PREDICATES, _opaque_predicates),
    (ObfuscationType.DEAD_CODE_INJECTION, _dead_code_injection),
    (ObfuscationType.STRING_ARRAY_ROTATION, _string_array_rotation),
    (ObfuscationType.JSFUCK, _jsfuck),
    (ObfuscationType.EVAL_OBFUSCATION, _eval_obfuscation),
    (ObfuscationType.HEX_ENCODING, _hex_encoding),
    (ObfuscationType.BASE64_ENCODING, _base64_encoding),
]


def detect_obfuscation_types(code: str) -> Set[ObfuscationType]:
    """Return every tag whose heuristic fires, or ``{UNKNOWN}`` when none do."""

    found: Set[ObfuscationType] = set()
    for tag, check in HEURISTICS:
        if check(code):
            found.add(tag)
    if not found:
        found.add(ObfuscationType.UNKNOWN)
    LOG.debug("detected obfuscation types: %s", ", ".join(t.value for t in ObfuscationType.ordered(found)))
    return found


__all__ = ["HEURISTICS", "detect_obfuscation_types"]
