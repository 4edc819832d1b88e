import asyncio
from types import SimpleNamespace

import pytest

from jsdeob import Deobfuscator, DeobfuscateOptions, LLMService, ObfuscationType, Transformation
from jsdeob.models import VMType
from jsdeob.pipeline import (
    DEFAULT_ANALYSIS,
    UNPACK_TRIGGERS,
    AdvancedOptions,
    merge_obfuscation_types,
    pipeline_confidence,
    readability_score,
    should_run,
)

PACKED_ALERT = (
    r"eval(function(p,a,c,k,e,d){e=function(c){return c};if(!''.replace(/^/,String)){while(c--){d[c]=k[c]||c}"
    r"k=[function(e){return d[e]}];e=function(){return'\\w+'};c=1};while(c--){if(k[c]){p=p.replace("
    r"new RegExp('\\b'+e(c)+'\\b','g'),k[c])}}return p}('0(1)',2,2,'alert|x'.split('|'),0,{}))"
)
LOW_CONFIDENCE_VM = "while (x) { switch (y) { case 1: a(); break; } }"


def _run(deobfuscator, options):
    return asyncio.run(deobfuscator.deobfuscate(options))


def _types(result):
    return [item.type for item in result.transformations]


@pytest.mark.parametrize(
    "explicit, auto, detected, expected",
    [
        (False, True, [ObfuscationType.PACKER], False),
        (True, False, [], True),
        (None, True, [ObfuscationType.PACKER], True),
        (None, True, [ObfuscationType.UNKNOWN], False),
        (None, False, [ObfuscationType.PACKER], False),
    ],
)
def test_should_run(explicit, auto, detected, expected):
    assert should_run(explicit, auto, detected, UNPACK_TRIGGERS) is expected


def test_readability_score():
    readable = "function add(first, second) {\n  // sum\n  return first + second;\n}\n"
    assert readability_score(readable) == 100
    assert readability_score("var _0x1=1;") == 30
    assert readability_score("") == 40


def test_pipeline_confidence():
    records = [Transformation("a", "ok", True), Transformation("b", "Failed", False)]
    assert pipeline_confidence(records, 50) == pytest.approx(0.5)
    assert pipeline_confidence([], 100) == pytest.approx(0.4)


def test_merge_obfuscation_types():
    records = [
        Transformation("jsvmp", "JSVMP deobfuscation", True),
        Transformation("unpack", "Unpacked Packer obfuscation", True),
        Transformation("advanced", "applied", True, {"detectedTechniques": ["control-flow-flattening", "made-up"]}),
        Transformation("unpack", "Unpacked AAEncode obfuscation", False),
    ]
    merged = merge_obfuscation_types({ObfuscationType.UNKNOWN}, records)
    assert merged == [
        ObfuscationType.VM_PROTECTION,
        ObfuscationType.PACKER,
        ObfuscationType.CONTROL_FLOW_FLATTENING,
    ]
    assert merge_obfuscation_types({ObfuscationType.UNKNOWN}, []) == [ObfuscationType.UNKNOWN]


def test_plain_code_runs_the_basic_passes():
    result = _run(Deobfuscator(), DeobfuscateOptions("var a = 1 + 2;"))
    assert "var a = 3;" in result.code
    assert result.warnings == ["Detected obfuscation types: unknown"]
    assert _types(result) == ["basic-ast-transform"]
    assert result.obfuscation_type == [ObfuscationType.UNKNOWN]
    assert result.analysis == DEFAULT_ANALYSIS
    assert result.unresolved_parts is None
    payload = result.to_json()
    assert payload["obfuscationType"] == ["unknown"]
    assert "unresolvedParts" not in payload
    text = result.to_text()
    assert "Obfuscation types: unknown" in text
    assert "  - [ok] basic-ast-transform: Constant folding, dead code elimination, string concatenation" in text
    assert text.endswith(f"Analysis: {DEFAULT_ANALYSIS}")


def test_results_are_cached_until_cleared():
    deobfuscator = Deobfuscator()
    first = _run(deobfuscator, {"code": "var a = 1;"})
    assert _run(deobfuscator, DeobfuscateOptions("var a = 1;")) is first
    assert _run(deobfuscator, {"code": "var a = 1;", "renameVariables": True}) is first
    assert _run(deobfuscator, {"code": "var a = 1;", "aggressive": True}) is not first
    deobfuscator.clear_cache()
    assert _run(deobfuscator, {"code": "var a = 1;"}) is not first


def test_packer_is_unpacked_in_auto_mode():
    result = _run(Deobfuscator(), {"code": PACKED_ALERT})
    assert result.code.strip() == "alert(x);"
    assert result.transformations[0] == Transformation("unpack", "Unpacked Packer obfuscation", True)
    assert ObfuscationType.PACKER in result.obfuscation_type


def test_unpack_can_be_disabled():
    result = _run(Deobfuscator(), {"code": PACKED_ALERT, "unpack": False})
    assert "unpack" not in _types(result)


def test_jsvmp_stage_records_detail(vm_sample):
    result = _run(Deobfuscator(), {"code": vm_sample, "jsvmp": True})
    record = result.transformations[0]
    assert record.type == "jsvmp" and record.success
    assert record.description == "JSVMP deobfuscation (type: custom, confidence: 60.0%)"
    assert record.detail["vmType"] == "custom"
    assert record.detail["vmFeatures"]["instructionCount"] == 12
    assert len(record.detail["instructionSample"]) == 10
    assert record.detail["stats"]["timeout"] == 30000
    assert all(warning.startswith("[JSVMP] ") for warning in result.warnings[1:])
    assert result.unresolved_parts[0].location == "line 6"
    assert ObfuscationType.VM_PROTECTION in result.obfuscation_type


def test_jsvmp_low_confidence_is_a_failed_record():
    result = _run(Deobfuscator(), {"code": LOW_CONFIDENCE_VM, "jsvmp": True})
    record = result.transformations[0]
    assert record.type == "jsvmp" and not record.success
    assert record.description == "JSVMP detected but confidence too low (30.0%), code unchanged"
    assert record.detail["reason"] == "confidence_too_low"
    assert "[JSVMP] VM protection detected but confidence too low (30.0%); code unchanged" in result.warnings
    assert ObfuscationType.VM_PROTECTION not in result.obfuscation_type


def test_jsvmp_restoration_error_is_a_failed_record(monkeypatch, vm_sample):
    deobfuscator = Deobfuscator()

    async def broken(code, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(deobfuscator.jsvmp.restorers[VMType.CUSTOM], "restore", broken)
    result = _run(deobfuscator, {"code": vm_sample, "jsvmp": True})
    record = result.transformations[0]
    assert record.type == "jsvmp" and not record.success
    assert record.description == "JSVMP deobfuscation failed: boom"
    assert record.detail["reason"] == "restoration_failed"
    assert "[JSVMP] custom restoration failed: boom" in result.warnings
    assert ObfuscationType.VM_PROTECTION not in result.obfuscation_type


def test_default_config_comes_from_the_environment(monkeypatch):
    monkeypatch.setenv("JSDEOB_CACHE_SIZE", "1")
    monkeypatch.setenv("JSDEOB_JSVMP_TIMEOUT_MS", "500")
    deobfuscator = Deobfuscator()
    assert deobfuscator.cache.capacity == 1
    assert deobfuscator.jsvmp.config.jsvmp_timeout_ms == 500


class RecordingAdvanced:
    def __init__(self, reply):
        self.reply = reply
        self.requests = []

    def deobfuscate(self, request):
        self.requests.append(request)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


def test_advanced_stage_uses_collaborator_output():
    advanced = RecordingAdvanced(
        {"code": "var b = 2;", "detectedTechniques": ["control-flow-flattening"], "confidence": 0.75, "warnings": ["note"]}
    )
    result = _run(Deobfuscator(advanced=advanced), {"code": "var a = 1;", "advanced": True, "timeout": 500})
    assert advanced.requests == [AdvancedOptions(code="var a = 1;", aggressive_vm=None, timeout=500)]
    assert "var b = 2;" in result.code
    record = result.transformations[0]
    assert record.description == "Advanced deobfuscation applied: control-flow-flattening (confidence: 75.0%)"
    assert record.detail == {"detectedTechniques": ["control-flow-flattening"], "confidence": 0.75}
    assert "[Advanced] note" in result.warnings
    assert result.obfuscation_type == [ObfuscationType.CONTROL_FLOW_FLATTENING]


def test_advanced_stage_accepts_async_objects():
    class AsyncAdvanced:
        async def deobfuscate(self, request):
            return SimpleNamespace(code="changed()", detected_techniques=[], warnings=[])

    result = _run(Deobfuscator(advanced=AsyncAdvanced()), {"code": "var a = 1;", "advanced": True})
    assert "changed" not in result.code
    assert "advanced" not in _types(result)


def test_advanced_stage_failure_is_recorded():
    advanced = RecordingAdvanced(RuntimeError("nope"))
    result = _run(Deobfuscator(advanced=advanced), {"code": "var a = 1;", "advanced": True})
    assert result.transformations[0] == Transformation("advanced", "Advanced deobfuscation failed: nope", False)
    assert "[Advanced] Advanced deobfuscation failed: nope" in result.warnings


def test_advanced_stage_follows_auto_mode():
    code = "if (false) { dead(); }"
    advanced = RecordingAdvanced({"code": code, "detectedTechniques": []})
    _run(Deobfuscator(advanced=advanced), {"code": code})
    assert len(advanced.requests) == 1
    advanced = RecordingAdvanced({"code": code, "detectedTechniques": []})
    _run(Deobfuscator(advanced=advanced), {"code": code, "auto": False})
    assert advanced.requests == []


def test_missing_collaborators_are_skipped():
    result = _run(Deobfuscator(), {"code": "var a = 1;", "advanced": True, "astOptimize": True})
    assert _types(result) == ["basic-ast-transform"]


def test_ast_optimizer():
    class Optimizer:
        def optimize(self, code):
            return code + "\nvar z = 0;"

    result = _run(Deobfuscator(ast_optimizer=Optimizer()), {"code": "var a = 1;", "astOptimize": True})
    assert result.code.endswith("var z = 0;")
    assert _types(result)[-1] == "ast-optimize"

    class Broken:
        def optimize(self, code):
            raise ValueError("bad tree")

    result = _run(Deobfuscator(ast_optimizer=Broken()), {"code": "var a = 1;", "astOptimize": True})
    assert result.transformations[-1] == Transformation("ast-optimize", "AST optimization failed", False)


def test_aggressive_mode_unflattens():
    code = (
        "var _0xorder = '0|2|1'.split('|'), _0xi = 0;\n"
        "while (true) { switch (_0xorder[_0xi++]) {"
        " case '0': first(); continue; case '1': third(); continue; case '2': second(); continue; } break; }"
    )
    result = _run(Deobfuscator(), {"code": code, "aggressive": True})
    assert "unflatten-control-flow" in _types(result)
    assert "switch" not in result.code
    assert result.code.index("first()") < result.code.index("second()") < result.code.index("third()")


def test_rename_option():
    result = _run(Deobfuscator(), {"code": "var _0x1a = 1;", "renameVariables": True})
    assert "var var_0 = 1;" in result.code
    assert result.transformations[-1].description == "Renamed 1 variables"


def test_llm_summary(fake_provider):
    provider = fake_provider("Summary of the code")
    result = _run(Deobfuscator(llm=LLMService(provider)), {"code": "var a = 1;", "llm": True})
    assert result.analysis == "Summary of the code"
    assert result.transformations[-1] == Transformation("llm-analysis", "AI-assisted code analysis completed", True)
    assert provider.requests[0]["options"] == {"temperature": 0.3, "maxTokens": 2000}


def test_llm_summary_failure_keeps_default(fake_provider):
    provider = fake_provider(RuntimeError("down"))
    result = _run(Deobfuscator(llm=LLMService(provider)), {"code": "var a = 1;", "llm": True})
    assert result.analysis == DEFAULT_ANALYSIS
    assert "llm-analysis" not in _types(result)


def test_llm_summary_needs_the_option(fake_provider):
    provider = fake_provider("unused")
    _run(Deobfuscator(llm=LLMService(provider)), {"code": "var a = 1;"})
    assert provider.requests == []
