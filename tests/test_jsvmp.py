import asyncio
from types import SimpleNamespace

from jsdeob.models import VMType
from jsdeob.vm import deobfuscator as engine_module
from jsdeob.vm.deobfuscator import JSVMPDeobfuscator, JSVMPOptions

STATS_KEYS = {"processingTime", "originalSize", "deobfuscatedSize", "instructionCount", "timeout"}


def _run(engine, code, **kwargs):
    return asyncio.run(engine.deobfuscate(JSVMPOptions(code, **kwargs)))


def test_custom_vm_is_detected_and_cleaned(vm_sample):
    result = _run(JSVMPDeobfuscator(), vm_sample, extract_instructions=True)
    assert result.is_jsvmp
    assert result.vm_type is VMType.CUSTOM
    assert result.vm_features.instruction_count == 12
    assert len(result.instructions) == 12
    assert result.deobfuscated_code == vm_sample
    assert result.confidence == 0.6
    assert result.unresolved_parts[0].location == "line 6"
    assert set(result.stats) == STATS_KEYS
    assert result.stats["instructionCount"] == 12
    assert result.stats["originalSize"] == len(vm_sample)
    assert result.stats["timeout"] == 30000


def test_instructions_only_extracted_on_request(vm_sample):
    result = _run(JSVMPDeobfuscator(), vm_sample)
    assert result.instructions == []
    assert result.stats["instructionCount"] == 0


def test_plain_code_is_not_a_vm():
    result = _run(JSVMPDeobfuscator(), "var a = 1;")
    assert not result.is_jsvmp
    assert result.deobfuscated_code == "var a = 1;"
    assert result.warnings == []


def test_low_confidence_leaves_code_unchanged():
    code = "while (x) { switch (y) { case 1: a(); break; } }"
    result = _run(JSVMPDeobfuscator(), code)
    assert result.is_jsvmp
    assert result.confidence == 0.3
    assert result.deobfuscated_code == code
    assert result.warnings == ["JSVMP detection confidence too low (0.30); code left unchanged"]


def test_detection_errors_become_warnings(monkeypatch):
    engine = JSVMPDeobfuscator()

    def broken(code):
        raise RuntimeError("bad input")

    monkeypatch.setattr(engine, "detect", broken)
    result = _run(engine, "var a = 1;")
    assert not result.is_jsvmp
    assert result.warnings == ["JSVMP deobfuscation failed: bad input"]
    assert set(result.stats) == STATS_KEYS


def test_restorer_errors_become_warnings(monkeypatch, vm_sample):
    engine = JSVMPDeobfuscator()

    async def broken(code, **kwargs):
        raise ValueError("boom")

    monkeypatch.setattr(engine.restorers[VMType.CUSTOM], "restore", broken)
    result = _run(engine, vm_sample)
    assert result.is_jsvmp
    assert result.deobfuscated_code == vm_sample
    assert "custom restoration failed: boom" in result.warnings
    assert result.error == "boom"
    assert result.confidence == 0.4


def test_encoding_without_loop_is_restored():
    code = "var $ = ~[]; $ = {___: ++$, $$$$: (![] + '')[$]}; $.$$$$"
    result = _run(JSVMPDeobfuscator(), code)
    assert result.is_jsvmp
    assert result.vm_type is VMType.JJENCODE
    assert result.vm_features.interpreter_location == "line 1"
    assert result.deobfuscated_code == "f"
    assert 0.8 <= result.confidence <= 0.85


def test_slow_runs_warn_about_the_timeout(monkeypatch):
    clock = iter([0.0, 5.0])
    monkeypatch.setattr(engine_module, "time", SimpleNamespace(perf_counter=lambda: next(clock)))
    result = _run(JSVMPDeobfuscator(), "var a = 1;", timeout=1000)
    assert result.stats["processingTime"] == 5000
    assert result.warnings == ["Processing took 5000ms, over the 1000ms timeout"]
