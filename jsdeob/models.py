"""Data model shared by the detector, the sub-pipelines and the orchestrator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional


class ObfuscationType(str, Enum):
    """Tags describing the obfuscation techniques found in a sample."""

    JAVASCRIPT_OBFUSCATOR = "javascript-obfuscator"
    WEBPACK = "webpack"
    UGLIFY = "uglify"
    VM_PROTECTION = "vm-protection"
    PACKER = "packer"
    AAENCODE = "aaencode"
    URLENCODED = "urlencoded"
    INVISIBLE_UNICODE = "invisible-unicode"
    CONTROL_FLOW_FLATTENING = "control-flow-flattening"
    OPAQUE_PREDICATES = "opaque-predicates"
    DEAD_CODE_INJECTION = "dead-code-injection"
    STRING_ARRAY_ROTATION = "string-array-rotation"
    JSFUCK = "jsfuck"
    EVAL_OBFUSCATION = "eval-obfuscation"
    HEX_ENCODING = "hex-encoding"
    BASE64_ENCODING = "base64-encoding"
    UNKNOWN = "unknown"

    @classmethod
    def ordered(cls, tags: Iterable["ObfuscationType"]) -> List["ObfuscationType"]:
        """Return ``tags`` deduplicated in declaration order."""

        present = set(tags)
        return [member for member in cls if member in present]

    @classmethod
    def lookup(cls, value: str) -> Optional["ObfuscationType"]:
        try:
            return cls(value)
        except ValueError:
            return None


class VMType(str, Enum):
    """Closed set of virtual machine families the JSVMP engine restores."""

    OBFUSCATOR_IO = "obfuscator.io"
    JSFUCK = "jsfuck"
    JJENCODE = "jjencode"
    CUSTOM = "custom"


@dataclass
class Transformation:
    """One record per stage attempt; the log is append-only."""

    type: str
    description: str
    success: bool
    detail: Optional[Dict[str, Any]] = None

    def to_json(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "description": self.description,
            "success": self.success,
        }
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


@dataclass
class UnresolvedPart:
    """A region a stage could not restore, surfaced verbatim to callers."""

    location: str
    reason: str
    suggestion: str

    def to_json(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class VMFeatures:
    """Structural signature of a suspected interpreter loop."""

    instruction_count: int
    interpreter_location: str
    complexity: str = "low"
    has_switch: bool = False
    has_instruction_array: bool = False
    has_program_counter: bool = False

    def to_json(self) -> Dict[str, Any]:
        return {
            "instructionCount": self.instruction_count,
            "interpreterLocation": self.interpreter_location,
            "complexity": self.complexity,
            "hasSwitch": self.has_switch,
            "hasInstructionArray": self.has_instruction_array,
            "hasProgramCounter": self.has_program_counter,
        }


@dataclass
class VMInstruction:
    """A single ``case`` of the dispatcher switch."""

    opcode: Any
    name: str
    type: str
    description: str

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DeobfuscateOptions:
    """Input of :meth:`jsdeob.pipeline.Deobfuscator.deobfuscate`.

    ``None`` on the tri-state stage flags means "let auto mode decide".
    """

    code: str
    aggressive: bool = False
    rename_variables: bool = False
    advanced: Optional[bool] = None
    jsvmp: Optional[bool] = None
    ast_optimize: Optional[bool] = None
    unpack: Optional[bool] = None
    aggressive_vm: Optional[bool] = None
    timeout: Optional[int] = None
    auto: bool = True
    llm: bool = False

    _ALIASES = {
        "renameVariables": "rename_variables",
        "astOptimize": "ast_optimize",
        "aggressiveVM": "aggressive_vm",
    }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DeobfuscateOptions":
        """Build options from snake_case or camelCase keys; unknown keys are ignored."""

        kwargs: Dict[str, Any] = {}
        known = set(cls.__dataclass_fields__)
        for key, value in data.items():
            name = cls._ALIASES.get(key, key)
            if name in known:
                kwargs[name] = value
        if "auto" in kwargs and kwargs["auto"] is None:
            kwargs["auto"] = True
        return cls(**kwargs)


@dataclass
class DeobfuscateResult:
    """Outcome of a full pipeline run."""

    code: str
    readability_score: int
    confidence: float
    obfuscation_type: List[ObfuscationType]
    transformations: List[Transformation]
    analysis: str
    warnings: Optional[List[str]] = None
    unresolved_parts: Optional[List[UnresolvedPart]] = None

    def to_json(self) -> Dict[str, Any]:
        """Return the JSON-serialisable camelCase representation."""

        payload: Dict[str, Any] = {
            "code": self.code,
            "readabilityScore": self.readability_score,
            "confidence": self.confidence,
            "obfuscationType": [tag.value for tag in self.obfuscation_type],
            "transformations": [item.to_json() for item in self.transformations],
            "analysis": self.analysis,
        }
        if self.warnings is not None:
            payload["warnings"] = list(self.warnings)
        if self.unresolved_parts is not None:
            payload["unresolvedParts"] = [part.to_json() for part in self.unresolved_parts]
        return payload

    def to_text(self) -> str:
        """Format the result as a human-readable summary."""

        lines: List[str] = []
        lines.append("Obfuscation types: " + ", ".join(tag.value for tag in self.obfuscation_type))
        lines.append(f"Readability score: {self.readability_score}/100")
        lines.append(f"Confidence: {self.confidence * 100:.1f}%")
        lines.append("Transformations:")
        for item in self.transformations:
            marker = "ok" if item.success else "failed"
            lines.append(f"  - [{marker}] {item.type}: {item.description}")
        if self.warnings:
            lines.append("Warnings:")
            lines.extend(f"  - {warning}" for warning in self.warnings)
        if self.unresolved_parts:
            lines.append("Unresolved:")
            for part in self.unresolved_parts:
                lines.append(f"  - {part.location}: {part.reason} ({part.suggestion})")
        lines.append(f"Analysis: {self.analysis}")
        return "\n".join(lines)


@dataclass
class StageResult:
    """Explicit per-stage outcome: the code to continue with plus what happened.

    ``transformation`` is ``None`` when the stage ran but had nothing to
    report (for example a decoding pass that found no escapes).
    """

    code: str
    transformation: Optional[Transformation] = None
    error: Optional[BaseException] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


__all__ = [
    "DeobfuscateOptions",
    "DeobfuscateResult",
    "ObfuscationType",
    "StageResult",
    "Transformation",
    "UnresolvedPart",
    "VMFeatures",
    "VMInstruction",
    "VMType",
]
