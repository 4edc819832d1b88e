"""One restoration strategy per :class:`~jsdeob.models.VMType`."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple, Type

from ..exceptions import JSParseError
from ..jsast import (
    NodeTransformer,
    generate,
    is_numeric_literal,
    is_string_literal,
    literal_string_value,
    location,
    make_boolean,
    make_identifier,
    make_string,
    member_property_name,
    node_type,
    numeric_value,
    parse,
    walk,
)
from ..llm import LLMService, extract_code_block, extract_json_array, extract_json_object
from ..models import UnresolvedPart, VMFeatures, VMInstruction, VMType
from ..passes.string_arrays import ARRAY_PREFIX, ArrayInliner, StringArrayTable, assignment_targets
from .symbolic import SymbolicError, decode_payload

LOG = logging.getLogger(__name__)

MAX_SYMBOLIC_LENGTH = 100_000
MAX_UNRESOLVED_REFERENCES = 20
_ENCRYPTED_DECODER_CALLS = frozenset({"atob", "fromCharCode", "charCodeAt", "decodeURIComponent", "escape"})


@dataclass
class RestoreOutcome:
    code: str
    confidence: float
    warnings: List[str] = field(default_factory=list)
    unresolved_parts: List[UnresolvedPart] = field(default_factory=list)


class Restorer(ABC):
    """Shared interface of the per-variant restorers."""

    vm_type: VMType

    def __init__(self, llm: Optional[LLMService] = None) -> None:
        self.llm = llm

    @abstractmethod
    async def restore(
        self,
        code: str,
        *,
        aggressive: bool = False,
        instructions: Sequence[VMInstruction] = (),
        features: Optional[VMFeatures] = None,
    ) -> RestoreOutcome:
        """Return the restored code, never raising for unrestorable input."""


# ---------------------------------------------------------------------------
# AI decoding shared by the encoding-style VMs


async def llm_decode_encoding(llm: LLMService, code: str, encoding: str) -> RestoreOutcome:
    """Ask the AI provider to decode ``code``; never raises."""

    try:
        reply = await llm.chat(llm.generate_decode_prompt(code, encoding))
    except Exception as exc:
        LOG.warning("AI decoding of %s failed: %s", encoding, exc)
        return RestoreOutcome(code, 0.1, [f"AI-assisted analysis failed: {exc}"])

    payload = extract_json_object(reply)
    if payload is not None:
        decoded = payload.get("decoded")
        if isinstance(decoded, str) and decoded.strip():
            try:
                confidence = float(payload.get("confidence", 0.5))
            except (TypeError, ValueError):
                confidence = 0.5
            confidence = min(max(confidence, 0.0), 0.95)
            return RestoreOutcome(decoded, confidence, [f"{encoding} payload decoded by the AI provider; verify before use"])
        warnings = [f"AI analysis could not fully decode the {encoding} payload; original code kept"]
        warnings.extend(_analysis_notes(payload))
        return RestoreOutcome(code, 0.2, warnings)

    block = extract_code_block(reply)
    if block:
        return RestoreOutcome(block, 0.4, [f"{encoding} payload taken from a code block in the AI response"])
    return RestoreOutcome(code, 0.1, [f"AI response for the {encoding} payload could not be parsed"])


def _join(value) -> str:
    if isinstance(value, (list, tuple)):
        return "; ".join(str(item) for item in value)
    return str(value)


def _analysis_notes(payload: Dict) -> List[str]:
    notes: List[str] = []
    if payload.get("mechanism"):
        notes.append(f"Mechanism: {payload['mechanism']}")
    if payload.get("keyFindings"):
        notes.append(f"Key findings: {_join(payload['keyFindings'])}")
    if payload.get("manualSteps"):
        notes.append(f"Manual steps: {_join(payload['manualSteps'])}")
    return notes


# ---------------------------------------------------------------------------
# obfuscator.io


def _numeric_index(node) -> Optional[int]:
    if is_string_literal(node):
        text = node.value.strip()
        try:
            return int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            return None
    value = numeric_value(node)
    if value is None or value != int(value):
        return None
    return int(value)


def _calls(node) -> Set[str]:
    """Names of the functions and methods called anywhere below ``node``."""

    names: Set[str] = set()
    for item in walk(node):
        if node_type(item) != "CallExpression":
            continue
        callee = item.callee
        if node_type(callee) == "Identifier":
            names.add(callee.name)
        else:
            name = member_property_name(callee)
            if name:
                names.add(name)
    return names


def _breaks_immediately(function) -> bool:
    """``while (..) { try { break; } ... }``: the loop exits before rotating."""

    for loop in walk(function.body):
        if node_type(loop) not in ("WhileStatement", "ForStatement", "DoWhileStatement"):
            continue
        body = loop.body
        statements = body.body if node_type(body) == "BlockStatement" else [body]
        if not statements or node_type(statements[0]) != "TryStatement":
            continue
        block = statements[0].block.body or []
        if block and node_type(block[0]) == "BreakStatement":
            return True
    return False


class _RotationResolver(NodeTransformer):
    """Apply statically countable ``push(shift())`` rotation IIFEs to the table.

    A dropped IIFE must leave the declared literal in the rotated order, so
    reads the inliner cannot resolve still see the runtime layout.  Arrays
    without a literal declaration keep their IIFE.
    """

    def __init__(self, table: StringArrayTable, declared: Dict[str, object]) -> None:
        super().__init__()
        self.table = table
        self.declared = declared
        self.warnings: List[str] = []
        self.unresolved: List[UnresolvedPart] = []

    def visit_ExpressionStatement(self, node):
        call = node.expression
        if node_type(call) != "CallExpression" or node_type(call.callee) != "FunctionExpression":
            return node
        args = call.arguments or []
        if len(args) < 2 or node_type(args[0]) != "Identifier" or args[0].name not in self.table:
            return node
        function = call.callee
        called = _calls(function)
        if not {"push", "shift"} <= called:
            return node
        name = args[0].name
        if _breaks_immediately(function):
            LOG.debug("rotation of %s exits immediately", name)
            self.mark()
            return None
        if "parseInt" in called:
            self.warnings.append(f"Rotation of string array {name} depends on a runtime checksum; order left as declared")
            self.unresolved.append(
                UnresolvedPart(
                    location(node),
                    f"string array {name} is rotated until a checksum matches",
                    "evaluate the rotation IIFE in a sandbox and supply the rotated array",
                )
            )
            return node
        count = _numeric_index(args[1])
        strings = self.table.get(name)
        if count is None or not strings:
            return node
        shift = count % len(strings)
        self.table.set(name, strings[shift:] + strings[:shift])
        LOG.debug("rotated string array %s by %d", name, count)
        declaration = self.declared.get(name)
        if declaration is None:
            return node
        elements = list(declaration.elements)
        declaration.elements = elements[shift:] + elements[:shift]
        self.mark()
        return None


class _DecoderInliner(ArrayInliner):
    """Inline both ``arr[idx]`` reads and ``decoder('0x1')`` calls."""

    def __init__(self, table: StringArrayTable, protected: Set[int], decoders: Dict[str, Tuple[str, int]]) -> None:
        super().__init__(table, protected)
        self.decoders = decoders

    def visit_CallExpression(self, node):
        callee = node.callee
        if node_type(callee) != "Identifier" or callee.name not in self.decoders:
            return node
        args = node.arguments or []
        if not args:
            return node
        index = _numeric_index(args[0])
        if index is None:
            return node
        array, offset = self.decoders[callee.name]
        value = self.table.lookup(array, index - offset)
        if value is None:
            return node
        self.mark()
        return make_string(value)


def _decoder_offset(function, array_names: Set[str]) -> Optional[Tuple[str, int]]:
    """``(array, offset)`` for ``function(i){ i = i - N; return arr[i]; }`` shapes."""

    params = function.params or []
    if not params or node_type(params[0]) != "Identifier":
        return None
    index_name = params[0].name
    referenced = [
        item.name for item in walk(function.body) if node_type(item) == "Identifier" and item.name in array_names
    ]
    if not referenced:
        return None
    offset = 0
    for item in walk(function.body):
        if node_type(item) != "AssignmentExpression" or node_type(item.left) != "Identifier":
            continue
        if item.left.name != index_name:
            continue
        right = item.right
        if (
            item.operator == "="
            and node_type(right) == "BinaryExpression"
            and right.operator == "-"
            and node_type(right.left) == "Identifier"
            and right.left.name == index_name
        ):
            value = numeric_value(right.right)
            if value is not None:
                offset = int(value)
        elif item.operator == "-=":
            value = numeric_value(right)
            if value is not None:
                offset = int(value)
    return referenced[0], offset


class _DebuggerRemover(NodeTransformer):
    def visit_DebuggerStatement(self, node):
        self.mark()
        return None


class ObfuscatorIORestorer(Restorer):
    vm_type = VMType.OBFUSCATOR_IO

    async def restore(self, code, *, aggressive=False, instructions=(), features=None):
        try:
            tree = parse(code, loc=True)
        except JSParseError as exc:
            return RestoreOutcome(
                code,
                0.1,
                [f"obfuscator.io restoration skipped: {exc}"],
                [UnresolvedPart("unknown", "source does not parse", "run the unpack stage first or fix the syntax error")],
            )

        warnings: List[str] = []
        unresolved: List[UnresolvedPart] = []
        table = StringArrayTable()
        declared: Dict[str, object] = {}
        dynamic: List[Tuple[str, object]] = []
        for node in walk(tree):
            if node_type(node) != "VariableDeclarator" or node_type(node.id) != "Identifier":
                continue
            if not node.id.name.startswith(ARRAY_PREFIX) or node_type(node.init) != "ArrayExpression":
                continue
            elements = node.init.elements or []
            if elements and all(is_string_literal(item) for item in elements):
                table.set(node.id.name, [item.value for item in elements])
                declared[node.id.name] = node.init
            elif elements:
                dynamic.append((node.id.name, node))

        for name, node in dynamic:
            await self._recover_array(code, name, node, table, warnings, unresolved)

        rotations = _RotationResolver(table, declared)
        rotations.visit(tree)
        warnings.extend(rotations.warnings)
        unresolved.extend(rotations.unresolved)

        decoders = self._decoders(tree, table, warnings, unresolved)
        inliner = _DecoderInliner(table, assignment_targets(tree), decoders)
        inliner.visit(tree)
        replaced = inliner.changes

        hex_count = 0
        for node in walk(tree):
            raw = getattr(node, "raw", None)
            if is_numeric_literal(node) and isinstance(raw, str) and raw[:2].lower() == "0x":
                node.raw = str(node.value)
                hex_count += 1

        removed = 0
        if aggressive:
            remover = _DebuggerRemover()
            remover.visit(tree)
            removed = remover.changes

        unresolved.extend(self._leftovers(tree, {name for name, _ in dynamic if name not in table}))

        if replaced:
            warnings.append(f"Inlined {replaced} string array references")
        if hex_count:
            warnings.append(f"Converted {hex_count} hexadecimal literals to decimal")
        if removed:
            warnings.append(f"Removed {removed} debugger statements")

        confidence = 0.5
        if len(table):
            confidence += 0.2
        if replaced:
            confidence += 0.1
        if hex_count:
            confidence += 0.1
        confidence -= 0.1 * min(len(unresolved), 3)
        confidence = round(min(max(confidence, 0.2), 0.95), 2)
        return RestoreOutcome(generate(tree), confidence, warnings, unresolved)

    async def _recover_array(self, code, name, node, table, warnings, unresolved) -> None:
        where = location(node)
        if self.llm is None:
            warnings.append(f"String array {name} is not a literal array; an AI provider is needed to recover it")
            unresolved.append(
                UnresolvedPart(where, f"string array {name} is built dynamically", "supply the runtime contents of the array")
            )
            return
        try:
            reply = await self.llm.chat(self.llm.generate_string_array_prompt(code, name))
        except Exception as exc:
            LOG.warning("AI recovery of string array %s failed: %s", name, exc)
            warnings.append(f"AI recovery of string array {name} failed: {exc}")
            unresolved.append(UnresolvedPart(where, f"string array {name} is built dynamically", "supply the runtime contents of the array"))
            return
        strings = extract_json_array(reply)
        if strings and all(isinstance(item, str) for item in strings):
            table.set(name, strings)
            warnings.append(f"String array {name} recovered by the AI provider ({len(strings)} entries); verify inlined values")
            return
        warnings.append(f"AI response for string array {name} was not a JSON string array")
        unresolved.append(UnresolvedPart(where, f"string array {name} is built dynamically", "supply the runtime contents of the array"))

    def _decoders(self, tree, table, warnings, unresolved) -> Dict[str, Tuple[str, int]]:
        decoders: Dict[str, Tuple[str, int]] = {}
        names = set(table)
        if not names:
            return decoders
        for node in walk(tree):
            kind = node_type(node)
            if kind == "FunctionDeclaration" and node_type(node.id) == "Identifier":
                name, function = node.id.name, node
            elif kind == "VariableDeclarator" and node_type(node.id) == "Identifier" and node_type(node.init) == "FunctionExpression":
                name, function = node.id.name, node.init
            else:
                continue
            if not name.startswith(ARRAY_PREFIX):
                continue
            shape = _decoder_offset(function, names)
            if shape is None:
                continue
            if _calls(function) & _ENCRYPTED_DECODER_CALLS:
                warnings.append(f"Decoder {name} applies string encryption; calls left in place")
                unresolved.append(
                    UnresolvedPart(location(node), f"decoder {name} decrypts its strings at runtime", "decode the strings in a sandbox")
                )
                continue
            decoders[name] = shape
        return decoders

    def _leftovers(self, tree, names: Set[str]) -> List[UnresolvedPart]:
        parts: List[UnresolvedPart] = []
        if not names:
            return parts
        for node in walk(tree):
            if len(parts) >= MAX_UNRESOLVED_REFERENCES:
                break
            if node_type(node) != "MemberExpression" or not node.computed:
                continue
            if node_type(node.object) != "Identifier" or node.object.name not in names:
                continue
            index = numeric_value(node.property)
            if index is None:
                continue
            parts.append(
                UnresolvedPart(
                    location(node),
                    f"{node.object.name}[{int(index)}] could not be resolved",
                    "supply the runtime contents of the string array",
                )
            )
        return parts


# ---------------------------------------------------------------------------
# JSFuck / JJEncode


def _quoted_payload(code: str) -> Optional[str]:
    text = code.strip().rstrip(";").strip()
    if len(text) < 2 or text[0] not in "'\"" or text[-1] != text[0]:
        return None
    try:
        return literal_string_value(text)
    except JSParseError:
        return None


class JSFuckRestorer(Restorer):
    vm_type = VMType.JSFUCK

    async def restore(self, code, *, aggressive=False, instructions=(), features=None):
        quoted = _quoted_payload(code)
        if quoted is not None:
            return RestoreOutcome(quoted, 0.6, ["JSFuck payload was a quoted string literal"])
        if len(code) > MAX_SYMBOLIC_LENGTH:
            return RestoreOutcome(
                code,
                0.2,
                [f"JSFuck payload is {len(code)} characters; symbolic decoding skipped"],
                [UnresolvedPart("line 1", "payload too large for static decoding", "decode it in an isolated JavaScript sandbox")],
            )
        warnings: List[str] = []
        try:
            decoded = decode_payload(code)
        except (SymbolicError, JSParseError) as exc:
            LOG.debug("JSFuck symbolic decoding failed: %s", exc)
            warnings.append(f"JSFuck static decoding failed: {exc}")
        else:
            return RestoreOutcome(decoded, 0.85, ["JSFuck payload decoded statically"])
        if self.llm is not None:
            outcome = await llm_decode_encoding(self.llm, code, "JSFuck")
            outcome.warnings[:0] = warnings
            return outcome
        return RestoreOutcome(
            code,
            0.1,
            warnings,
            [UnresolvedPart("line 1", "JSFuck payload not decoded", "decode it in an isolated JavaScript sandbox")],
        )


class JJEncodeRestorer(Restorer):
    vm_type = VMType.JJENCODE

    async def restore(self, code, *, aggressive=False, instructions=(), features=None):
        warnings: List[str] = []
        try:
            decoded = decode_payload(code)
        except (SymbolicError, JSParseError) as exc:
            LOG.debug("JJEncode symbolic decoding failed: %s", exc)
            warnings.append(f"JJEncode payload could not be decoded: {exc}")
        else:
            return RestoreOutcome(decoded, 0.85, ["JJEncode payload decoded statically"])
        if self.llm is not None:
            outcome = await llm_decode_encoding(self.llm, code, "JJEncode")
            outcome.warnings[:0] = warnings
            return outcome
        return RestoreOutcome(code, 0.1, warnings)


# ---------------------------------------------------------------------------
# Custom interpreters


class _BasicCleaner(_DebuggerRemover):
    def __init__(self) -> None:
        super().__init__()
        self.removed = 0

    def visit_DebuggerStatement(self, node):
        self.removed += 1
        return super().visit_DebuggerStatement(node)

    def visit_UnaryExpression(self, node):
        argument = node.argument
        if (
            node.operator == "!"
            and node_type(argument) == "UnaryExpression"
            and argument.operator == "!"
            and node_type(argument.argument) == "Literal"
            and getattr(argument.argument, "regex", None) is None
        ):
            self.mark()
            return make_boolean(bool(argument.argument.value))
        if node.operator == "void" and is_numeric_literal(argument) and argument.value == 0:
            self.mark()
            return make_identifier("undefined")
        return node


def _vm_analysis_notes(analysis: Dict) -> List[str]:
    notes: List[str] = []
    if analysis.get("vmType"):
        notes.append(f"VM type: {analysis['vmType']}")
    structure = analysis.get("vmStructure")
    if isinstance(structure, dict):
        parts = [
            f"{label}={structure[key]}"
            for key, label in (
                ("interpreterLoop", "interpreter loop"),
                ("bytecodeVar", "bytecode"),
                ("pcVar", "pc"),
                ("stackVar", "stack"),
            )
            if structure.get(key)
        ]
        if parts:
            notes.append("VM structure: " + ", ".join(parts))
    instruction_map = analysis.get("instructionMap")
    if isinstance(instruction_map, dict) and instruction_map:
        sample = ", ".join(f"{opcode}={name}" for opcode, name in list(instruction_map.items())[:8])
        notes.append(f"Instruction map ({len(instruction_map)} opcodes): {sample}")
    if analysis.get("restorationApproach"):
        notes.append(f"Restoration approach: {analysis['restorationApproach']}")
    if analysis.get("restorationSteps"):
        notes.append(f"Restoration steps: {_join(analysis['restorationSteps'])}")
    if analysis.get("simplifiedLogic"):
        notes.append(f"Simplified logic: {analysis['simplifiedLogic']}")
    for warning in analysis.get("warnings") or []:
        notes.append(f"AI note: {warning}")
    return notes


class CustomVMRestorer(Restorer):
    vm_type = VMType.CUSTOM

    async def restore(self, code, *, aggressive=False, instructions=(), features=None):
        basic = self.basic_cleanup(code, features)
        if not aggressive or self.llm is None:
            if self.llm is None:
                basic.warnings.append("Configure an AI provider and enable aggressive mode for structural VM analysis")
            return basic
        return await self._ai_assisted(code, basic, instructions)

    def basic_cleanup(self, code: str, features: Optional[VMFeatures] = None) -> RestoreOutcome:
        """Semantics-preserving cleanup; never recovers interpreter logic."""

        where = features.interpreter_location if features is not None else "unknown"
        pending = UnresolvedPart(
            where,
            "custom VM interpreter logic not recovered",
            "map the instruction handlers manually or enable AI-assisted analysis",
        )
        try:
            tree = parse(code)
        except JSParseError as exc:
            return RestoreOutcome(code, 0.2, [f"Custom VM cleanup skipped: {exc}"], [pending])
        cleaner = _BasicCleaner()
        cleaner.visit(tree)
        warnings = ["Custom VM: applied semantics-preserving cleanup only; interpreter logic was not recovered"]
        if cleaner.removed:
            warnings.append(f"Removed {cleaner.removed} debugger statements")
        output = generate(tree) if cleaner.changes else code
        return RestoreOutcome(output, 0.4, warnings, [pending])

    async def _ai_assisted(self, code, basic: RestoreOutcome, instructions) -> RestoreOutcome:
        try:
            reply = await self.llm.chat(self.llm.generate_vm_analysis_prompt(code, self.vm_type.value, instructions))
        except Exception as exc:
            LOG.warning("AI-assisted VM analysis failed: %s", exc)
            basic.warnings.append(f"AI-assisted VM analysis failed: {exc}")
            return basic

        analysis = extract_json_object(reply)
        if analysis is not None:
            notes = _vm_analysis_notes(analysis)
            restored = analysis.get("restoredCode")
            if isinstance(restored, str) and restored.strip():
                warnings = ["AI structure analysis complete; restored code supplied by the AI provider", *notes]
                return RestoreOutcome(restored, 0.7, warnings, basic.unresolved_parts)
            warnings = ["AI structure analysis complete; analysis only, cleaned code kept", *notes]
            return RestoreOutcome(basic.code, 0.5, basic.warnings + warnings, basic.unresolved_parts)

        block = extract_code_block(reply)
        if block:
            return RestoreOutcome(block, 0.5, ["AI returned restored code without a structured analysis"], basic.unresolved_parts)
        basic.warnings.append("AI response could not be parsed; basic cleanup kept")
        return basic


RESTORERS: Dict[VMType, Type[Restorer]] = {
    VMType.OBFUSCATOR_IO: ObfuscatorIORestorer,
    VMType.JSFUCK: JSFuckRestorer,
    VMType.JJENCODE: JJEncodeRestorer,
    VMType.CUSTOM: CustomVMRestorer,
}


__all__ = [
    "CustomVMRestorer",
    "JJEncodeRestorer",
    "JSFuckRestorer",
    "MAX_SYMBOLIC_LENGTH",
    "ObfuscatorIORestorer",
    "RESTORERS",
    "RestoreOutcome",
    "Restorer",
    "llm_decode_encoding",
]
