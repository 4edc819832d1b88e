"""Resolve ``\\xHH`` / ``\\uHHHH`` text left inside string values."""

from __future__ import annotations

import re

from ..jsast import walk, is_string_literal, make_string
from ..models import StageResult
from . import run_pass

KIND = "string-decode"

_HEX_RE = re.compile(r"\\x([0-9A-Fa-f]{2})")
_UNICODE_RE = re.compile(r"\\u([0-9A-Fa-f]{4})")


def decode_escapes(value: str) -> str:
    if "\\x" in value:
        value = _HEX_RE.sub(lambda m: chr(int(m.group(1), 16)), value)
    if "\\u" in value:
        value = _UNICODE_RE.sub(lambda m: chr(int(m.group(1), 16)), value)
    return value


def decode(tree) -> int:
    decoded = 0
    for node in walk(tree):
        if not is_string_literal(node):
            continue
        value = decode_escapes(node.value)
        if value != node.value:
            fresh = make_string(value)
            node.value = fresh.value
            node.raw = fresh.raw
            decoded += 1
    return decoded


def run(code: str) -> StageResult:
    return run_pass(KIND, code, decode, lambda count: f"Decoded {count} strings (hex/unicode)")


__all__ = ["KIND", "decode", "decode_escapes", "run"]
