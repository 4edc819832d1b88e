"""Custom exception hierarchy for the deobfuscator."""

from __future__ import annotations


class DeobfuscationError(Exception):
    """Base class for all deobfuscation related errors."""


class JSParseError(DeobfuscationError):
    """Raised when a JavaScript source cannot be parsed into an AST."""


class UnpackingError(DeobfuscationError):
    """Badly packed source; the message describes what did not fit."""


class VMRestoreError(DeobfuscationError):
    """Raised when a virtual machine restorer hits an unrecoverable issue."""


class LLMResponseError(DeobfuscationError):
    """Raised when an AI collaborator reply cannot be interpreted."""


__all__ = [
    "DeobfuscationError",
    "JSParseError",
    "LLMResponseError",
    "UnpackingError",
    "VMRestoreError",
]
