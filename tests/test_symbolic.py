import math

import pytest

from jsdeob.exceptions import JSParseError, VMRestoreError
from jsdeob.vm.symbolic import (
    JSArray,
    SymbolicError,
    SymbolicEvaluator,
    UNDEFINED,
    decode_payload,
    number_to_string,
    to_number,
    to_string,
)


@pytest.mark.parametrize(
    "code, expected",
    [
        ("(![]+[])[+[]]", "f"),
        ("(!![]+[])[+!+[]]", "r"),
        ("([][[]]+[])[+!![]]", "n"),
        ("([]['flat']+[])[+!+[]+!+[]+!+[]]", "c"),
        ("(+[![]]+[])[+!+[]]", "a"),
    ],
)
def test_jsfuck_coercions(code, expected):
    assert decode_payload(code) == expected


def test_function_payload_is_captured_not_run():
    assert decode_payload("[]['filter']['constructor']('alert(1)')()") == "alert(1)"


def test_uncalled_function_returns_its_body():
    assert decode_payload("Function('alert(2)')") == "alert(2)"


def test_single_return_body_is_evaluated():
    assert decode_payload("Function('return \"ab\" + \"c\"')()") == "abc"


def test_jjencode_style_sigil_object():
    code = "var $ = ~[]; $ = {___: ++$, $$$$: (![] + '')[$]}; $.$$$$"
    assert decode_payload(code) == "f"


def test_unknown_identifier_is_rejected():
    with pytest.raises(SymbolicError):
        decode_payload("document.write(1)")


def test_non_payload_program_is_rejected():
    with pytest.raises(SymbolicError, match="payload"):
        decode_payload("1 + 2")


def test_step_budget():
    with pytest.raises(SymbolicError, match="budget"):
        SymbolicEvaluator(max_steps=5).decode("(![]+[])[+[]]")


def test_parse_errors_surface():
    with pytest.raises(JSParseError):
        decode_payload("[[")


def test_symbolic_error_is_a_restore_error():
    assert issubclass(SymbolicError, VMRestoreError)


def test_coercions():
    assert to_string(JSArray([1.0, UNDEFINED, "x"])) == "1,,x"
    assert to_string(True) == "true"
    assert number_to_string(1e21) == "1e+21"
    assert number_to_string(0.5) == "0.5"
    assert number_to_string(-0.0) == "0"
    assert to_number(" 0x1f ") == 31.0
    assert to_number("") == 0.0
    assert math.isnan(to_number("abc"))
    assert math.isnan(to_number(UNDEFINED))
