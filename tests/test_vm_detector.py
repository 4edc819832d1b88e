import pytest

from jsdeob.models import VMFeatures, VMType
from jsdeob.vm.detector import (
    classify_complexity,
    detect_jsvmp,
    detect_jsvmp_with_regex,
    detection_confidence,
    identify_vm_type,
)
from jsdeob.vm.instructions import extract_instructions


def test_detect_interpreter_loop(vm_sample):
    features = detect_jsvmp(vm_sample)
    assert features is not None
    assert features.instruction_count == 12
    assert features.interpreter_location == "line 6"
    assert features.complexity == "low"
    assert features.has_switch
    assert features.has_instruction_array
    assert features.has_program_counter


def test_no_loop_means_no_vm():
    assert detect_jsvmp("var a = 1; switch (a) { case 1: break; }") is None


def test_nested_switch_depth_raises_complexity():
    code = "while (true) { switch (a) { case 1: switch (b) { case 2: break; } break; } }"
    features = detect_jsvmp(code)
    assert features.complexity == "medium"
    assert not features.has_program_counter


def test_largest_dispatcher_wins():
    code = (
        "for (;;) { switch (x) { case 1: break; } }\n"
        "do { switch (op) { case 1: break; case 2: break; case 3: break; } } while (op);"
    )
    features = detect_jsvmp(code)
    assert features.instruction_count == 3
    assert features.interpreter_location == "line 2"


def test_regex_fallback_on_unparseable_source():
    code = "while (pc < n) { switch (code[pc++]) { case 1: a(); case 2: b(); "
    features = detect_jsvmp(code)
    assert features == detect_jsvmp_with_regex(code)
    assert features.instruction_count == 2
    assert features.interpreter_location == "unknown"
    assert features.has_program_counter
    assert not features.has_instruction_array


@pytest.mark.parametrize(
    "count, depth, expected",
    [(50, 1, "high"), (10, 3, "high"), (15, 1, "medium"), (3, 2, "medium"), (3, 1, "low")],
)
def test_classify_complexity(count, depth, expected):
    assert classify_complexity(count, depth) == expected


@pytest.mark.parametrize(
    "code, expected",
    [
        ("var _0x1a2b = function () { return 1; };", VMType.OBFUSCATOR_IO),
        ("[][(![]+[])[+[]]]", VMType.JSFUCK),
        ("$=~[];$={___:++$};", VMType.JJENCODE),
        ("var x = 1;", VMType.CUSTOM),
    ],
)
def test_identify_vm_type(code, expected):
    assert identify_vm_type(code) is expected


def test_detection_confidence(vm_sample):
    features = detect_jsvmp(vm_sample)
    assert detection_confidence(features, VMType.CUSTOM) == 0.8
    assert detection_confidence(features, VMType.OBFUSCATOR_IO) == 1.0
    bare = VMFeatures(instruction_count=2, interpreter_location="line 1", has_switch=True)
    assert detection_confidence(bare, VMType.CUSTOM) == 0.3


def test_extract_instructions(vm_sample):
    instructions = extract_instructions(vm_sample)
    assert [item.opcode for item in instructions] == list(range(12))
    assert instructions[0].name == "OP_0"
    kinds = [item.type for item in instructions]
    assert kinds == [
        "stack-op",
        "stack-op",
        "stack-op",
        "branch",
        "call",
        "assign",
        "stack-op",
        "assign",
        "stack-op",
        "assign",
        "call",
        "unknown",
    ]


def test_extract_instructions_without_switch():
    assert extract_instructions("var a = 1;") == []
