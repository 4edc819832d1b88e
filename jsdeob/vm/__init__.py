"""Bytecode virtual machine (JSVMP) detection and restoration."""

from __future__ import annotations

from .deobfuscator import CONFIDENCE_THRESHOLD, JSVMPDeobfuscator, JSVMPOptions, JSVMPResult
from .detector import detect_jsvmp, detect_jsvmp_with_regex, detection_confidence, identify_vm_type
from .instructions import extract_instructions, infer_instruction_type
from .restorers import RESTORERS, RestoreOutcome, Restorer
from .symbolic import SymbolicEvaluator, SymbolicError, decode_payload

__all__ = [
    "CONFIDENCE_THRESHOLD",
    "JSVMPDeobfuscator",
    "JSVMPOptions",
    "JSVMPResult",
    "RESTORERS",
    "RestoreOutcome",
    "Restorer",
    "SymbolicError",
    "SymbolicEvaluator",
    "decode_payload",
    "detect_jsvmp",
    "detect_jsvmp_with_regex",
    "detection_confidence",
    "extract_instructions",
    "identify_vm_type",
    "infer_instruction_type",
]
