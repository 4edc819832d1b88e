import pytest

from jsdeob.detect import HEURISTICS, detect_obfuscation_types
from jsdeob.models import ObfuscationType


def test_clean_code_is_unknown():
    assert detect_obfuscation_types("function add(a, b) { return a + b; }") == {ObfuscationType.UNKNOWN}


@pytest.mark.parametrize(
    "code, tag",
    [
        ("var _0x1a2b = ['a'];", ObfuscationType.JAVASCRIPT_OBFUSCATOR),
        ("__webpack_require__(12);", ObfuscationType.WEBPACK),
        ("var a=1;" * 200, ObfuscationType.UGLIFY),
        ("eval(x); new Function('y');", ObfuscationType.VM_PROTECTION),
        (
            "eval(function(p,a,c,k,e,d){return p}('0',2,1,'x'.split('|'),0,{}))",
            ObfuscationType.PACKER,
        ),
        ("ﾟωﾟﾉ= /｀ｍ´）ﾉ ~┻━┻ //*´∇｀*/ ['_'];", ObfuscationType.AAENCODE),
        ("%61%6C%65%72%74%28%31%29%3B%0A", ObfuscationType.URLENCODED),
        ("var a\u200b = 1;", ObfuscationType.INVISIBLE_UNICODE),
        ("while (true) { switch (x) { case 1: break; } }", ObfuscationType.CONTROL_FLOW_FLATTENING),
        ("while(!![]){switch(o[i++]){}}", ObfuscationType.CONTROL_FLOW_FLATTENING),
        ("if (typeof _0xabc !== 'undefined') { go(); }", ObfuscationType.OPAQUE_PREDICATES),
        ("if (false) { dead(); }", ObfuscationType.DEAD_CODE_INJECTION),
        ("if (!1) { dead(); }", ObfuscationType.DEAD_CODE_INJECTION),
        (
            "(function(_0x1a, _0x2b){ while(--_0x2b){ _0x1a.push(_0x1a.shift()); } }(_0x1a, 0x10));",
            ObfuscationType.STRING_ARRAY_ROTATION,
        ),
        ("[][(![]+[])[+[]]]", ObfuscationType.JSFUCK),
        ("eval('alert(1)')", ObfuscationType.EVAL_OBFUSCATION),
        ("eval(atob('YWxlcnQoMSk='))", ObfuscationType.EVAL_OBFUSCATION),
        ("var s = '\\x41\\x42';", ObfuscationType.HEX_ENCODING),
        ("atob('YWxlcnQoJ2hlbGxvIHdvcmxkJyk=')", ObfuscationType.BASE64_ENCODING),
    ],
)
def test_heuristic_tags(code, tag):
    detected = detect_obfuscation_types(code)
    assert tag in detected
    assert ObfuscationType.UNKNOWN not in detected


def test_multiple_heuristics_fire_together():
    code = "var _0xabc = ['\\x41']; eval('x'); if (false) {}"
    detected = detect_obfuscation_types(code)
    assert {
        ObfuscationType.JAVASCRIPT_OBFUSCATOR,
        ObfuscationType.EVAL_OBFUSCATION,
        ObfuscationType.HEX_ENCODING,
        ObfuscationType.DEAD_CODE_INJECTION,
    } <= detected


def test_opaque_predicate_requires_obfuscator_names():
    code = "if (typeof window !== 'undefined') { run(); }"
    assert ObfuscationType.OPAQUE_PREDICATES not in detect_obfuscation_types(code)


def test_short_single_line_is_not_uglify():
    assert ObfuscationType.UGLIFY not in detect_obfuscation_types("var a=1;" * 10)


def test_every_tag_except_unknown_has_a_heuristic():
    tags = {tag for tag, _ in HEURISTICS}
    assert tags == set(ObfuscationType) - {ObfuscationType.UNKNOWN}
