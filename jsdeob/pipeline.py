"""Stage orchestration for the deobfuscation pipeline.

The orchestrator detects the obfuscation tags once, then runs a fixed stage
order: unpack, JSVMP reversal, the external advanced pass, the basic cleanup
passes, AST optimisation, renaming and an optional AI summary.  Every stage is
guarded; a failing stage keeps the previous code and appends a failed
:class:`~jsdeob.models.Transformation`.
"""

from __future__ import annotations

import inspect
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Set, Union

from .cache import ResultCache, cache_key
from .config import DeobfuscatorConfig
from .detect import detect_obfuscation_types
from .llm import LLMService
from .models import (
    DeobfuscateOptions,
    DeobfuscateResult,
    ObfuscationType,
    StageResult,
    Transformation,
    UnresolvedPart,
)
from .passes import constant_folding, rename, simplify, string_arrays, string_decode, unflatten
from .passes.string_arrays import StringArrayTable
from .unpackers import UniversalUnpacker
from .vm import CONFIDENCE_THRESHOLD, JSVMPDeobfuscator, JSVMPOptions

LOG = logging.getLogger(__name__)

DEFAULT_ANALYSIS = "Deobfuscation pipeline completed."

UNPACK_TRIGGERS = (
    ObfuscationType.PACKER,
    ObfuscationType.AAENCODE,
    ObfuscationType.URLENCODED,
    ObfuscationType.EVAL_OBFUSCATION,
)
JSVMP_TRIGGERS = (ObfuscationType.VM_PROTECTION,)
ADVANCED_TRIGGERS = (
    ObfuscationType.INVISIBLE_UNICODE,
    ObfuscationType.CONTROL_FLOW_FLATTENING,
    ObfuscationType.STRING_ARRAY_ROTATION,
    ObfuscationType.DEAD_CODE_INJECTION,
    ObfuscationType.OPAQUE_PREDICATES,
)
AST_OPTIMIZE_TRIGGERS = (
    ObfuscationType.JAVASCRIPT_OBFUSCATOR,
    ObfuscationType.UGLIFY,
    ObfuscationType.WEBPACK,
)

_UNPACK_TAGS = {
    "Packer": ObfuscationType.PACKER,
    "AAEncode": ObfuscationType.AAENCODE,
    "URLEncode": ObfuscationType.URLENCODED,
}
_IDENTIFIER_RE = re.compile(r"\b[a-zA-Z_$][a-zA-Z0-9_$]*\b")
_WHITESPACE_RE = re.compile(r"\s")


@dataclass
class AdvancedOptions:
    """Arguments handed to the advanced collaborator."""

    code: str
    aggressive_vm: Optional[bool] = None
    use_ast_optimization: bool = False
    timeout: Optional[int] = None


def should_run(
    explicit: Optional[bool],
    auto: bool,
    detected: Iterable[ObfuscationType],
    triggers: Sequence[ObfuscationType],
) -> bool:
    """Explicit ``True``/``False`` wins; otherwise run iff auto and a trigger was detected."""

    if explicit is False:
        return False
    if explicit is True:
        return True
    if auto:
        return any(tag in triggers for tag in detected)
    return False


def readability_score(code: str) -> int:
    score = 0
    if "\n" in code:
        score += 20
    if "//" in code or "/*" in code:
        score += 10
    names = _IDENTIFIER_RE.findall(code)
    mean_length = sum(len(name) for name in names) / (len(names) or 1)
    if mean_length > 3:
        score += 30
    density = len(_WHITESPACE_RE.sub("", code)) / (len(code) or 1)
    if density < 0.8:
        score += 20
    if "_0x" not in code and "\\x" not in code:
        score += 20
    return min(score, 100)


def pipeline_confidence(transformations: Sequence[Transformation], readability: int) -> float:
    succeeded = sum(1 for item in transformations if item.success)
    total = len(transformations) or 1
    value = (succeeded / total) * 0.6 + (readability / 100) * 0.4
    return min(max(value, 0.0), 1.0)


def merge_obfuscation_types(
    detected: Iterable[ObfuscationType], transformations: Sequence[Transformation]
) -> List[ObfuscationType]:
    """Add the tags confirmed by successful stages; drop ``unknown`` once a concrete tag exists."""

    tags: Set[ObfuscationType] = set(detected)
    for item in transformations:
        if not item.success:
            continue
        if item.type == "jsvmp":
            tags.add(ObfuscationType.VM_PROTECTION)
        elif item.type == "unpack":
            for name, tag in _UNPACK_TAGS.items():
                if name in item.description:
                    tags.add(tag)
        elif item.type == "advanced" and item.detail:
            for technique in item.detail.get("detectedTechniques") or []:
                tag = ObfuscationType.lookup(technique)
                if tag is not None:
                    tags.add(tag)
    if len(tags) > 1:
        tags.discard(ObfuscationType.UNKNOWN)
    return ObfuscationType.ordered(tags)


def _field(result: Any, *names: str, default: Any = None) -> Any:
    """Read the first present key/attribute of a collaborator result."""

    for name in names:
        if isinstance(result, Mapping):
            if name in result:
                return result[name]
        elif hasattr(result, name):
            return getattr(result, name)
    return default


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class _RunLog:
    """Per-call collector of transformations, warnings and unresolved parts."""

    def __init__(self) -> None:
        self.transformations: List[Transformation] = []
        self.warnings: List[str] = []
        self.unresolved: List[UnresolvedPart] = []

    def record(self, kind: str, description: str, success: bool, detail=None) -> None:
        self.transformations.append(Transformation(kind, description, success, detail))

    def apply(self, result: StageResult, previous: str) -> str:
        if result.transformation is not None:
            self.transformations.append(result.transformation)
        return result.code if result.ok else previous


class Deobfuscator:
    """Pipeline orchestrator.

    ``string_arrays`` and ``cache`` are shared by every call on one instance
    until :meth:`clear_cache`.
    """

    def __init__(
        self,
        llm: Optional[LLMService] = None,
        advanced: Any = None,
        ast_optimizer: Any = None,
        config: Optional[DeobfuscatorConfig] = None,
        string_arrays: Optional[StringArrayTable] = None,
        cache: Optional[ResultCache] = None,
    ) -> None:
        self.config = config or DeobfuscatorConfig.from_env()
        self.llm = llm
        self.advanced = advanced
        self.ast_optimizer = ast_optimizer
        self.string_arrays = string_arrays if string_arrays is not None else StringArrayTable()
        self.cache = cache if cache is not None else ResultCache(self.config.cache_size)
        self.unpacker = UniversalUnpacker(max_iterations=self.config.packer_max_iterations)
        self.jsvmp = JSVMPDeobfuscator(llm, self.config)

    def clear_cache(self) -> None:
        self.cache.clear()
        self.string_arrays.clear()

    async def deobfuscate(self, options: Union[DeobfuscateOptions, Mapping[str, Any]]) -> DeobfuscateResult:
        if not isinstance(options, DeobfuscateOptions):
            options = DeobfuscateOptions.from_mapping(options)

        key = cache_key(options)
        cached = self.cache.get(key)
        if cached is not None:
            LOG.debug("deobfuscation result served from cache")
            return cached

        LOG.info("starting deobfuscation pipeline")
        started = time.perf_counter()
        try:
            result = await self._run(options)
        except Exception:
            LOG.exception("deobfuscation failed")
            raise
        LOG.info(
            "deobfuscation completed in %dms (confidence: %.1f%%)",
            int((time.perf_counter() - started) * 1000),
            result.confidence * 100,
        )
        self.cache.put(key, result)
        return result

    async def _run(self, options: DeobfuscateOptions) -> DeobfuscateResult:
        code = options.code
        log = _RunLog()
        auto = options.auto is not False

        detected = detect_obfuscation_types(code)
        names = ", ".join(tag.value for tag in ObfuscationType.ordered(detected))
        LOG.info("detected obfuscation types: %s", names)
        log.warnings.append(f"Detected obfuscation types: {names}")

        if should_run(options.unpack, auto, detected, UNPACK_TRIGGERS):
            code = await self._unpack(code, log)
        if should_run(options.jsvmp, auto, detected, JSVMP_TRIGGERS):
            code = await self._jsvmp(code, options, log)
        if should_run(options.advanced, auto, detected, ADVANCED_TRIGGERS):
            code = await self._advanced(code, options, log)

        code = log.apply(string_arrays.extract(code, self.string_arrays), code)
        code = log.apply(constant_folding.run(code), code)
        code = log.apply(string_decode.run(code), code)
        code = log.apply(string_arrays.decrypt(code, self.string_arrays), code)
        if options.aggressive:
            code = log.apply(unflatten.run(code), code)
        code = log.apply(simplify.run(code), code)

        if should_run(options.ast_optimize, auto, detected, AST_OPTIMIZE_TRIGGERS):
            code = self._ast_optimize(code, log)
        if options.rename_variables:
            code = log.apply(rename.run(code), code)

        analysis = DEFAULT_ANALYSIS
        if options.llm and self.llm is not None:
            summary = await self._summarise(code)
            if summary:
                analysis = summary
                log.record("llm-analysis", "AI-assisted code analysis completed", True)

        readability = readability_score(code)
        return DeobfuscateResult(
            code=code,
            readability_score=readability,
            confidence=pipeline_confidence(log.transformations, readability),
            obfuscation_type=merge_obfuscation_types(detected, log.transformations),
            transformations=log.transformations,
            analysis=analysis,
            warnings=log.warnings or None,
            unresolved_parts=log.unresolved or None,
        )

    async def _unpack(self, code: str, log: _RunLog) -> str:
        LOG.info("running unpackers")
        try:
            result = await self.unpacker.deobfuscate(code)
        except Exception as exc:
            LOG.warning("unpacking failed: %s", exc)
            log.record("unpack", "UniversalUnpacker failed", False)
            return code
        if result.success and result.code != code:
            log.record("unpack", f"Unpacked {result.type} obfuscation", True)
            return result.code
        return code

    async def _jsvmp(self, code: str, options: DeobfuscateOptions, log: _RunLog) -> str:
        LOG.info("running JSVMP deobfuscator")
        aggressive = options.aggressive_vm if options.aggressive_vm is not None else options.aggressive
        try:
            result = await self.jsvmp.deobfuscate(
                JSVMPOptions(
                    code=code,
                    aggressive=bool(aggressive),
                    extract_instructions=True,
                    timeout=options.timeout if options.timeout is not None else self.config.jsvmp_timeout_ms,
                )
            )
        except Exception as exc:
            LOG.warning("JSVMP deobfuscation failed: %s", exc)
            log.warnings.append(f"[JSVMP] JSVMP deobfuscation failed: {exc}")
            log.record("jsvmp", f"JSVMP deobfuscation failed: {exc}", False)
            return code

        log.warnings.extend(f"[JSVMP] {warning}" for warning in result.warnings)
        log.unresolved.extend(result.unresolved_parts)
        vm_type = result.vm_type.value if result.vm_type is not None else "unknown"
        percent = f"{result.confidence * 100:.1f}%"

        if result.error is not None:
            log.record(
                "jsvmp",
                f"JSVMP deobfuscation failed: {result.error}",
                False,
                {"vmType": vm_type, "confidence": result.confidence, "reason": "restoration_failed"},
            )
            return code

        if result.is_jsvmp and result.confidence > CONFIDENCE_THRESHOLD:
            detail = {
                "vmType": vm_type,
                "confidence": result.confidence,
                "warningCount": len(result.warnings),
                "unresolvedCount": len(result.unresolved_parts),
            }
            if result.vm_features is not None:
                detail["vmFeatures"] = result.vm_features.to_json()
            if result.instructions:
                detail["instructionSample"] = [
                    {"type": item.type, "opcode": item.opcode} for item in result.instructions[:10]
                ]
            if result.stats:
                detail["stats"] = result.stats
            log.record("jsvmp", f"JSVMP deobfuscation (type: {vm_type}, confidence: {percent})", True, detail)
            return result.deobfuscated_code

        if result.is_jsvmp:
            log.warnings.append(f"[JSVMP] VM protection detected but confidence too low ({percent}); code unchanged")
            log.record(
                "jsvmp",
                f"JSVMP detected but confidence too low ({percent}), code unchanged",
                False,
                {"vmType": vm_type, "confidence": result.confidence, "reason": "confidence_too_low"},
            )
        return code

    async def _advanced(self, code: str, options: DeobfuscateOptions, log: _RunLog) -> str:
        if self.advanced is None:
            LOG.debug("no advanced deobfuscator configured, skipping")
            return code
        LOG.info("running advanced deobfuscator")
        request = AdvancedOptions(code=code, aggressive_vm=options.aggressive_vm, timeout=options.timeout)
        try:
            result = await _maybe_await(self.advanced.deobfuscate(request))
            warnings = _field(result, "warnings", default=None) or []
            log.warnings.extend(f"[Advanced] {warning}" for warning in warnings)
            techniques = list(_field(result, "detectedTechniques", "detected_techniques", default=None) or [])
            if not techniques:
                return code
            confidence = float(_field(result, "confidence", default=0.0) or 0.0)
            output = _field(result, "code", default=code)
        except Exception as exc:
            LOG.warning("advanced deobfuscation failed: %s", exc)
            log.warnings.append(f"[Advanced] Advanced deobfuscation failed: {exc}")
            log.record("advanced", f"Advanced deobfuscation failed: {exc}", False)
            return code

        log.record(
            "advanced",
            f"Advanced deobfuscation applied: {', '.join(techniques)} (confidence: {confidence * 100:.1f}%)",
            True,
            {"detectedTechniques": techniques, "confidence": confidence},
        )
        return output if isinstance(output, str) else code

    def _ast_optimize(self, code: str, log: _RunLog) -> str:
        if self.ast_optimizer is None:
            LOG.debug("no AST optimizer configured, skipping")
            return code
        LOG.info("running AST optimizer")
        try:
            optimized = self.ast_optimizer.optimize(code)
        except Exception as exc:
            LOG.warning("AST optimization failed: %s", exc)
            log.record("ast-optimize", "AST optimization failed", False)
            return code
        if isinstance(optimized, str) and optimized != code:
            log.record(
                "ast-optimize",
                "AST optimizations applied (constant folding, propagation, variable inlining, property unfolding)",
                True,
            )
            return optimized
        return code

    async def _summarise(self, code: str) -> Optional[str]:
        try:
            messages = self.llm.generate_deobfuscation_prompt(code)
            return await self.llm.chat(
                messages,
                temperature=self.config.llm_temperature,
                max_tokens=self.config.llm_max_tokens,
            )
        except Exception as exc:
            LOG.warning("AI analysis failed: %s", exc)
            return None


__all__ = [
    "ADVANCED_TRIGGERS",
    "AST_OPTIMIZE_TRIGGERS",
    "AdvancedOptions",
    "DEFAULT_ANALYSIS",
    "Deobfuscator",
    "JSVMP_TRIGGERS",
    "UNPACK_TRIGGERS",
    "merge_obfuscation_types",
    "pipeline_confidence",
    "readability_score",
    "should_run",
]
