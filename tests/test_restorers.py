import asyncio
import json
import re

import pytest

from jsdeob.llm import LLMService
from jsdeob.models import VMFeatures
from jsdeob.vm.restorers import (
    MAX_SYMBOLIC_LENGTH,
    CustomVMRestorer,
    JJEncodeRestorer,
    JSFuckRestorer,
    ObfuscatorIORestorer,
    Restorer,
    llm_decode_encoding,
)

OBFUSCATED = """
var _0x4e2a = ['World', 'log', 'Hello'];
(function (_0x1, _0x2) {
  var _0x3 = function (_0x4) { while (--_0x4) { _0x1.push(_0x1.shift()); } };
  _0x3(++_0x2);
}(_0x4e2a, 0x1));
var _0x5f = function (_0x6, _0x7) { _0x6 = _0x6 - 0x0; var _0x8 = _0x4e2a[_0x6]; return _0x8; };
console[_0x5f('0x0')](_0x5f('0x1'), _0x5f('0x2'));
"""


def _s(value: str) -> str:
    return r"['\"]%s['\"]" % re.escape(value)


def _restore(restorer, code, **kwargs):
    return asyncio.run(restorer.restore(code, **kwargs))


def test_obfuscator_io_rotation_and_decoder_calls():
    outcome = _restore(ObfuscatorIORestorer(), OBFUSCATED)
    assert re.search(r"console\[%s\]\(%s, %s\)" % (_s("log"), _s("Hello"), _s("World")), outcome.code)
    assert "push" not in outcome.code
    assert re.search(r"var _0x4e2a = \[%s, %s, %s\]" % (_s("log"), _s("Hello"), _s("World")), outcome.code)
    assert outcome.unresolved_parts == []
    assert "Inlined 3 string array references" in outcome.warnings
    assert outcome.confidence == 0.9


def test_obfuscator_io_rotation_rewrites_declared_array():
    code = """
var _0x1a = ['log', 'hello', 'world'];
(function (_0x2, _0x3) { var f = function (_0x4) { while (--_0x4) { _0x2.push(_0x2.shift()); } }; f(++_0x3); }(_0x1a, 0x1));
var _0x2b3c = function (_0x5) { _0x5 = _0x5 - 0x0; return _0x1a[_0x5]; };
var k = 0; console.log(_0x2b3c(k), _0x2b3c('0x0'));
"""
    outcome = _restore(ObfuscatorIORestorer(), code)
    assert "push" not in outcome.code
    # The variable-index read still goes through the array at runtime.
    assert re.search(r"var _0x1a = \[%s, %s, %s\]" % (_s("hello"), _s("world"), _s("log")), outcome.code)
    assert re.search(r"console\.log\(_0x2b3c\(k\), %s\)" % _s("hello"), outcome.code)


def test_obfuscator_io_recovered_array_keeps_rotation(fake_provider):
    provider = fake_provider('["first", "second"]')
    code = (
        "var _0xabc = [a(), 'x'];"
        "(function (_0x1, _0x2) { var _0x3 = function (_0x4) { while (--_0x4) { _0x1.push(_0x1.shift()); } };"
        " _0x3(++_0x2); }(_0xabc, 0x1));"
        "g(_0xabc[0]);"
    )
    outcome = _restore(ObfuscatorIORestorer(LLMService(provider)), code)
    assert "push" in outcome.code
    assert re.search(r"g\(%s\)" % _s("second"), outcome.code)


def test_restorer_is_abstract():
    with pytest.raises(TypeError):
        Restorer()


def test_obfuscator_io_break_in_try_means_no_rotation():
    code = (
        "var _0xarr = ['a', 'b'];"
        "(function (_0x1, _0x2) { while (true) { try { break; } catch (e) { _0x1.push(_0x1.shift()); } } }(_0xarr, 5));"
        "g(_0xarr[0]);"
    )
    outcome = _restore(ObfuscatorIORestorer(), code)
    assert re.search(r"g\(%s\)" % _s("a"), outcome.code)
    assert "try" not in outcome.code


def test_obfuscator_io_checksum_rotation_is_unresolved():
    code = (
        "var _0xarr = ['a', 'b'];"
        "(function (_0x1, _0x2) { while (true) { try { var _0x3 = parseInt(_0x1[0]);"
        " if (_0x3 === _0x2) break; else _0x1.push(_0x1.shift()); }"
        " catch (e) { _0x1.push(_0x1.shift()); } } }(_0xarr, 123));"
    )
    outcome = _restore(ObfuscatorIORestorer(), code)
    assert "parseInt" in outcome.code
    assert any("checksum" in warning for warning in outcome.warnings)
    assert len(outcome.unresolved_parts) == 1


def test_obfuscator_io_dynamic_array_without_ai():
    code = "var _0xabc = [a(), 'x']; f(_0xabc[0]);"
    outcome = _restore(ObfuscatorIORestorer(), code)
    assert "_0xabc[0]" in outcome.code
    assert any("not a literal array" in warning for warning in outcome.warnings)
    reasons = [part.reason for part in outcome.unresolved_parts]
    assert "string array _0xabc is built dynamically" in reasons
    assert "_0xabc[0] could not be resolved" in reasons
    assert outcome.confidence == 0.3


def test_obfuscator_io_dynamic_array_recovered_by_ai(fake_provider):
    provider = fake_provider('Here you go: ["first", "second"]')
    code = "var _0xabc = [a(), 'x']; f(_0xabc[0]);"
    outcome = _restore(ObfuscatorIORestorer(LLMService(provider)), code)
    assert re.search(r"f\(%s\)" % _s("first"), outcome.code)
    assert any("recovered by the AI provider" in warning for warning in outcome.warnings)
    assert "_0xabc" in provider.requests[0]["messages"][1]["content"]


def test_obfuscator_io_debugger_removed_only_when_aggressive():
    code = "var _0xa = ['x']; function _0xf() { debugger; return _0xa[0]; }"
    assert "debugger" in _restore(ObfuscatorIORestorer(), code).code
    outcome = _restore(ObfuscatorIORestorer(), code, aggressive=True)
    assert "debugger" not in outcome.code
    assert "Removed 1 debugger statements" in outcome.warnings


def test_obfuscator_io_parse_failure():
    outcome = _restore(ObfuscatorIORestorer(), "var _0x = ;")
    assert outcome.code == "var _0x = ;"
    assert outcome.confidence == 0.1


def test_jsfuck_quoted_literal():
    outcome = _restore(JSFuckRestorer(), "'alert(1)'")
    assert outcome.code == "alert(1)"
    assert outcome.confidence >= 0.5


def test_jsfuck_symbolic_decode():
    outcome = _restore(JSFuckRestorer(), "[]['filter']['constructor']('alert(1)')()")
    assert outcome.code == "alert(1)"
    assert outcome.confidence == 0.85


def test_jsfuck_oversized_payload_is_partial():
    code = "+" * (MAX_SYMBOLIC_LENGTH + 1)
    outcome = _restore(JSFuckRestorer(), code)
    assert outcome.code == code
    assert outcome.confidence == 0.2
    assert outcome.unresolved_parts


def test_jsfuck_failure_without_ai():
    outcome = _restore(JSFuckRestorer(), "[][[]]()")
    assert outcome.code == "[][[]]()"
    assert outcome.confidence == 0.1
    assert outcome.warnings[0].startswith("JSFuck static decoding failed")


def test_jsfuck_failure_falls_back_to_ai(fake_provider):
    provider = fake_provider(json.dumps({"decoded": "alert(3)", "confidence": 0.7}))
    outcome = _restore(JSFuckRestorer(LLMService(provider)), "[][[]]()")
    assert outcome.code == "alert(3)"
    assert outcome.confidence == 0.7
    assert outcome.warnings[0].startswith("JSFuck static decoding failed")


def test_llm_decode_encoding_reply_shapes(fake_provider):
    def decode(reply):
        return asyncio.run(llm_decode_encoding(LLMService(fake_provider(reply)), "code", "JSFuck"))

    failed = decode(RuntimeError("boom"))
    assert failed.code == "code" and failed.confidence == 0.1
    assert failed.warnings == ["AI-assisted analysis failed: boom"]

    analysis = decode('{"mechanism": "Function constructor", "manualSteps": ["a", "b"]}')
    assert analysis.code == "code" and analysis.confidence == 0.2
    assert "Mechanism: Function constructor" in analysis.warnings
    assert "Manual steps: a; b" in analysis.warnings

    block = decode("```js\nalert(4)\n```")
    assert block.code == "alert(4)" and block.confidence == 0.4

    garbage = decode("no idea")
    assert garbage.code == "code" and garbage.confidence == 0.1

    clamped = decode('{"decoded": "x()", "confidence": 5}')
    assert clamped.confidence == 0.95


def test_jjencode_decode():
    code = "var $ = ~[]; $ = {___: ++$, $$$$: (![] + '')[$]}; $.$$$$"
    outcome = _restore(JJEncodeRestorer(), code)
    assert outcome.code == "f"
    assert outcome.confidence == 0.85


def test_jjencode_invalid_input_keeps_code():
    code = "$=~[]; $.foo.bar"
    outcome = _restore(JJEncodeRestorer(), code)
    assert outcome.code == code
    assert outcome.confidence == 0.1
    assert outcome.warnings[0].startswith("JJEncode payload could not be decoded")


CUSTOM = "debugger; var a = !!1; var b = void 0; while (run) { switch (op[pc++]) { case 0: pc = 2; break; } }"
FEATURES = VMFeatures(instruction_count=1, interpreter_location="line 1", has_switch=True)


def test_custom_basic_cleanup():
    outcome = _restore(CustomVMRestorer(), CUSTOM, features=FEATURES)
    assert "debugger" not in outcome.code
    assert "var a = true;" in outcome.code
    assert "var b = undefined;" in outcome.code
    assert outcome.confidence == 0.4
    assert "Removed 1 debugger statements" in outcome.warnings
    assert any("Configure an AI provider" in warning for warning in outcome.warnings)
    assert outcome.unresolved_parts[0].location == "line 1"


def test_custom_not_aggressive_skips_ai(fake_provider):
    provider = fake_provider("{}")
    outcome = _restore(CustomVMRestorer(LLMService(provider)), CUSTOM, features=FEATURES)
    assert provider.requests == []
    assert outcome.confidence == 0.4
    assert not any("Configure an AI provider" in warning for warning in outcome.warnings)


def test_custom_ai_restored_code(fake_provider):
    reply = json.dumps(
        {
            "vmStructure": {"pcVar": "pc"},
            "instructionMap": {"0": "JUMP"},
            "restorationApproach": "trace the dispatcher",
            "simplifiedLogic": "jumps to 2",
            "restoredCode": "console.log(3);",
        }
    )
    outcome = _restore(CustomVMRestorer(LLMService(fake_provider(reply))), CUSTOM, aggressive=True, features=FEATURES)
    assert outcome.code == "console.log(3);"
    assert outcome.confidence == 0.7
    assert "VM structure: pc=pc" in outcome.warnings
    assert "Instruction map (1 opcodes): 0=JUMP" in outcome.warnings


def test_custom_ai_analysis_only(fake_provider):
    reply = 'Analysis follows:\n```json\n{"vmStructure": {}, "restorationApproach": "manual"}\n```'
    outcome = _restore(CustomVMRestorer(LLMService(fake_provider(reply))), CUSTOM, aggressive=True, features=FEATURES)
    assert "var a = true;" in outcome.code
    assert outcome.confidence == 0.5
    assert "Restoration approach: manual" in outcome.warnings


def test_custom_ai_failures_degrade_to_basic(fake_provider):
    failed = _restore(
        CustomVMRestorer(LLMService(fake_provider(RuntimeError("offline")))), CUSTOM, aggressive=True, features=FEATURES
    )
    assert failed.confidence == 0.4
    assert "AI-assisted VM analysis failed: offline" in failed.warnings

    garbled = _restore(CustomVMRestorer(LLMService(fake_provider("sorry"))), CUSTOM, aggressive=True, features=FEATURES)
    assert garbled.confidence == 0.4
    assert "AI response could not be parsed; basic cleanup kept" in garbled.warnings
