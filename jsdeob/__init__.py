"""Static JavaScript deobfuscation pipeline."""

from __future__ import annotations

from .config import DeobfuscatorConfig
from .detect import detect_obfuscation_types
from .exceptions import DeobfuscationError, JSParseError, LLMResponseError, UnpackingError, VMRestoreError
from .llm import LLMService
from .models import (
    DeobfuscateOptions,
    DeobfuscateResult,
    ObfuscationType,
    Transformation,
    UnresolvedPart,
    VMType,
)
from .pipeline import Deobfuscator

__version__ = "0.1.0"

__all__ = [
    "DeobfuscateOptions",
    "DeobfuscateResult",
    "DeobfuscationError",
    "Deobfuscator",
    "DeobfuscatorConfig",
    "JSParseError",
    "LLMResponseError",
    "LLMService",
    "ObfuscationType",
    "Transformation",
    "UnpackingError",
    "UnresolvedPart",
    "VMRestoreError",
    "VMType",
    "__version__",
    "detect_obfuscation_types",
]
