"""JSVMP reversal engine: detect, identify, gate, extract and restore."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config import DeobfuscatorConfig
from ..llm import LLMService
from ..models import UnresolvedPart, VMFeatures, VMInstruction, VMType
from .detector import detect_jsvmp, detection_confidence, identify_vm_type
from .instructions import extract_instructions
from .restorers import RESTORERS, RestoreOutcome, Restorer

LOG = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = 0.3
# JSFuck / JJEncode carry no interpreter loop; the encoding itself is the VM.
ENCODING_CONFIDENCE = 0.8
_ENCODING_TYPES = (VMType.JSFUCK, VMType.JJENCODE)


@dataclass
class JSVMPOptions:
    code: str
    aggressive: bool = False
    extract_instructions: bool = False
    timeout: Optional[int] = None


@dataclass
class JSVMPResult:
    is_jsvmp: bool
    deobfuscated_code: str
    vm_type: Optional[VMType] = None
    confidence: float = 0.0
    warnings: List[str] = field(default_factory=list)
    unresolved_parts: List[UnresolvedPart] = field(default_factory=list)
    vm_features: Optional[VMFeatures] = None
    instructions: List[VMInstruction] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)
    # Set when restoration raised; the code is unchanged.
    error: Optional[str] = None


class JSVMPDeobfuscator:
    """Reverse bytecode-VM protection, one :class:`Restorer` per VM family."""

    def __init__(self, llm: Optional[LLMService] = None, config: Optional[DeobfuscatorConfig] = None) -> None:
        self.llm = llm
        self.config = config or DeobfuscatorConfig.from_env()
        self.restorers: Dict[VMType, Restorer] = {vm_type: cls(llm) for vm_type, cls in RESTORERS.items()}

    def detect(self, code: str) -> Optional[VMFeatures]:
        return detect_jsvmp(code)

    def identify(self, code: str, features: Optional[VMFeatures] = None) -> VMType:
        return identify_vm_type(code, features)

    async def restore(
        self,
        code: str,
        vm_type: VMType,
        *,
        aggressive: bool = False,
        instructions: Optional[List[VMInstruction]] = None,
        features: Optional[VMFeatures] = None,
    ) -> RestoreOutcome:
        restorer = self.restorers[vm_type]
        return await restorer.restore(code, aggressive=aggressive, instructions=instructions or (), features=features)

    async def deobfuscate(self, options: JSVMPOptions) -> JSVMPResult:
        started = time.perf_counter()
        code = options.code
        timeout = options.timeout if options.timeout is not None else self.config.jsvmp_timeout_ms

        def finish(result: JSVMPResult) -> JSVMPResult:
            elapsed = int((time.perf_counter() - started) * 1000)
            result.stats = {
                "processingTime": elapsed,
                "originalSize": len(code),
                "deobfuscatedSize": len(result.deobfuscated_code),
                "instructionCount": len(result.instructions),
                "timeout": timeout,
            }
            if timeout and elapsed > timeout:
                result.warnings.append(f"Processing took {elapsed}ms, over the {timeout}ms timeout")
            return result

        try:
            features = self.detect(code)
            vm_type = self.identify(code, features)
        except Exception as exc:
            LOG.warning("JSVMP detection failed: %s", exc)
            return finish(JSVMPResult(False, code, warnings=[f"JSVMP deobfuscation failed: {exc}"]))

        if features is None:
            if vm_type not in _ENCODING_TYPES:
                LOG.debug("no interpreter loop found")
                return finish(JSVMPResult(False, code, vm_type=vm_type))
            features = VMFeatures(0, "line 1", "low")
            confidence = ENCODING_CONFIDENCE
        else:
            confidence = detection_confidence(features, vm_type)

        LOG.info("JSVMP candidate: type=%s confidence=%.2f", vm_type.value, confidence)
        result = JSVMPResult(True, code, vm_type=vm_type, confidence=confidence, vm_features=features)
        if confidence <= CONFIDENCE_THRESHOLD:
            result.warnings.append(
                f"JSVMP detection confidence too low ({confidence:.2f}); code left unchanged"
            )
            return finish(result)

        if options.extract_instructions:
            try:
                result.instructions = extract_instructions(code, features)
            except Exception as exc:
                LOG.warning("instruction extraction failed: %s", exc)
                result.warnings.append(f"Instruction extraction failed: {exc}")

        try:
            outcome = await self.restore(
                code,
                vm_type,
                aggressive=options.aggressive,
                instructions=result.instructions,
                features=features,
            )
        except Exception as exc:
            LOG.warning("%s restoration failed: %s", vm_type.value, exc)
            result.warnings.append(f"{vm_type.value} restoration failed: {exc}")
            result.error = str(exc)
            result.confidence = round(min(confidence, 1.0) * 0.5, 2)
            return finish(result)

        result.deobfuscated_code = outcome.code
        result.warnings.extend(outcome.warnings)
        result.unresolved_parts.extend(outcome.unresolved_parts)
        # Overall confidence blends detection and restoration.
        result.confidence = round(min(confidence, 1.0) * 0.5 + outcome.confidence * 0.5, 2)
        return finish(result)


__all__ = [
    "CONFIDENCE_THRESHOLD",
    "ENCODING_CONFIDENCE",
    "JSVMPDeobfuscator",
    "JSVMPOptions",
    "JSVMPResult",
]
