"""Static evaluator for the expression subset JSFuck and JJEncode are built from.

JSFuck and JJEncode spell their payload out of coerced built-ins
(``![]+[]`` is ``"false"``, ``[]["flat"]+[]`` is ``"function flat() {
[native code] }"`` ...) and finally hand it to the ``Function`` constructor.
:class:`SymbolicEvaluator` models just enough of JavaScript's coercion rules
and built-ins to rebuild that string.  It never executes the payload: calling
a function produced by ``Function(body)`` stops evaluation and reports
``body`` through :class:`PayloadCaptured`, unless ``body`` is a single
``return <expression>`` which is itself evaluated symbolically.
"""

from __future__ import annotations

import base64
import binascii
import logging
import math
import re
import string
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import JSParseError, VMRestoreError
from ..jsast import node_type, parse

LOG = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 500_000


class SymbolicError(VMRestoreError):
    """Evaluation left the supported subset."""


class PayloadCaptured(Exception):
    """Raised when code built by ``Function(...)`` is about to run."""

    def __init__(self, body: str) -> None:
        super().__init__(body[:60])
        self.body = body


class _Undefined:
    def __repr__(self) -> str:
        return "undefined"


class _Null:
    def __repr__(self) -> str:
        return "null"


UNDEFINED = _Undefined()
NULL = _Null()


class JSArray:
    def __init__(self, items: Optional[List[Any]] = None) -> None:
        self.items = list(items or [])


class JSObject:
    def __init__(self, props: Optional[Dict[str, Any]] = None, tag: str = "Object") -> None:
        self.props = dict(props or {})
        self.tag = tag


class JSRegExp:
    def __init__(self, pattern: str, flags: str = "") -> None:
        self.pattern = pattern
        self.flags = flags


NativeImpl = Callable[[Any, List[Any]], Any]


class NativeFunction:
    def __init__(self, name: str, impl: Optional[NativeImpl] = None, props: Optional[Dict[str, Any]] = None) -> None:
        self.name = name
        self.impl = impl
        self.props = dict(props or {})


class CompiledFunction:
    """Result of ``Function(..., body)``; the body is kept as text."""

    def __init__(self, body: str) -> None:
        self.body = body


# ---------------------------------------------------------------------------
# Coercions


_DECIMAL_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")


def number_to_string(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value == 0:
        return "0"
    if float(value).is_integer() and abs(value) < 1e21:
        return str(int(value))
    text = repr(float(value))
    if "e" in text:
        mantissa, exponent = text.split("e")
        sign = "-" if exponent.startswith("-") else "+"
        digits = exponent.lstrip("+-").lstrip("0") or "0"
        if mantissa.endswith(".0"):
            mantissa = mantissa[:-2]
        return f"{mantissa}e{sign}{digits}"
    return text


def to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is UNDEFINED:
        return "undefined"
    if value is NULL:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return number_to_string(float(value))
    if isinstance(value, JSArray):
        return ",".join("" if item is UNDEFINED or item is NULL else to_string(item) for item in value.items)
    if isinstance(value, JSObject):
        return f"[object {value.tag}]"
    if isinstance(value, JSRegExp):
        return f"/{value.pattern}/{value.flags}"
    if isinstance(value, NativeFunction):
        return f"function {value.name}() {{ [native code] }}"
    if isinstance(value, CompiledFunction):
        return f"function anonymous(\n) {{\n{value.body}\n}}"
    raise SymbolicError(f"cannot convert {type(value).__name__} to string")


def to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if value is UNDEFINED:
        return math.nan
    if value is NULL:
        return 0.0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        lowered = text.lower()
        try:
            if lowered.startswith("0x"):
                return float(int(text[2:], 16))
            if lowered.startswith("0o"):
                return float(int(text[2:], 8))
            if lowered.startswith("0b"):
                return float(int(text[2:], 2))
        except ValueError:
            return math.nan
        if text in ("Infinity", "+Infinity"):
            return math.inf
        if text == "-Infinity":
            return -math.inf
        if _DECIMAL_RE.match(text):
            return float(text)
        return math.nan
    return to_number(to_string(value))


def to_int32(value: Any) -> int:
    number = to_number(value)
    if not math.isfinite(number):
        return 0
    number = int(number) & 0xFFFFFFFF
    return number - 0x100000000 if number >= 0x80000000 else number


def truthy(value: Any) -> bool:
    if value is UNDEFINED or value is NULL:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return bool(value)
    return True


def type_of(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (NativeFunction, CompiledFunction)):
        return "function"
    return "object"


def _is_primitive(value: Any) -> bool:
    return value is UNDEFINED or value is NULL or isinstance(value, (bool, int, float, str))


def to_primitive(value: Any) -> Any:
    return value if _is_primitive(value) else to_string(value)


def property_key(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return to_string(value)


def _array_index(key: str) -> Optional[int]:
    if key.isdigit() and (key == "0" or not key.startswith("0")):
        return int(key)
    return None


def loose_equals(left: Any, right: Any) -> bool:
    if (left is UNDEFINED or left is NULL) and (right is UNDEFINED or right is NULL):
        return True
    if left is UNDEFINED or left is NULL or right is UNDEFINED or right is NULL:
        return False
    if not _is_primitive(left) and not _is_primitive(right):
        return left is right
    left, right = to_primitive(left), to_primitive(right)
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    return to_number(left) == to_number(right)


def strict_equals(left: Any, right: Any) -> bool:
    if type_of(left) != type_of(right) or (left is NULL) != (right is NULL):
        return False
    if isinstance(left, (bool, str)):
        return left == right
    if isinstance(left, (int, float)):
        return float(left) == float(right)
    return left is right


# ---------------------------------------------------------------------------
# Built-ins


def _arg(args: List[Any], index: int) -> Any:
    return args[index] if index < len(args) else UNDEFINED


def _relative_index(value: Any, length: int, default: int) -> int:
    if value is UNDEFINED:
        return default
    number = to_number(value)
    if math.isnan(number):
        return 0
    if math.isinf(number):
        return length if number > 0 else 0
    index = int(number)
    if index < 0:
        return max(length + index, 0)
    return min(index, length)


def _html(tag: str, attribute: Optional[str] = None) -> NativeImpl:
    def impl(this: Any, args: List[Any]) -> str:
        text = to_string(this)
        if attribute is None:
            return f"<{tag}>{text}</{tag}>"
        value = to_string(_arg(args, 0)).replace('"', "&quot;")
        return f'<{tag} {attribute}="{value}">{text}</{tag}>'

    return impl


def _str_char_at(this: Any, args: List[Any]) -> str:
    text = to_string(this)
    index = to_number(_arg(args, 0))
    index = 0 if math.isnan(index) else int(index)
    return text[index] if 0 <= index < len(text) else ""


def _str_char_code_at(this: Any, args: List[Any]) -> float:
    text = to_string(this)
    index = to_number(_arg(args, 0))
    index = 0 if math.isnan(index) else int(index)
    return float(ord(text[index])) if 0 <= index < len(text) else math.nan


def _str_at(this: Any, args: List[Any]) -> Any:
    text = to_string(this)
    index = int(to_number(_arg(args, 0)) or 0)
    if index < 0:
        index += len(text)
    return text[index] if 0 <= index < len(text) else UNDEFINED


def _str_slice(this: Any, args: List[Any]) -> str:
    text = to_string(this)
    start = _relative_index(_arg(args, 0), len(text), 0)
    end = _relative_index(_arg(args, 1), len(text), len(text))
    return text[start:end]


def _str_substr(this: Any, args: List[Any]) -> str:
    text = to_string(this)
    start = _relative_index(_arg(args, 0), len(text), 0)
    count = _arg(args, 1)
    if count is UNDEFINED:
        return text[start:]
    return text[start : start + max(int(to_number(count) or 0), 0)]


def _str_split(this: Any, args: List[Any]) -> JSArray:
    text = to_string(this)
    separator = _arg(args, 0)
    if separator is UNDEFINED:
        return JSArray([text])
    separator = to_string(separator)
    if separator == "":
        return JSArray(list(text))
    return JSArray(text.split(separator))


def _str_replace(this: Any, args: List[Any]) -> str:
    pattern = _arg(args, 0)
    if not isinstance(pattern, str):
        raise SymbolicError("replace() only supports string patterns")
    return to_string(this).replace(pattern, to_string(_arg(args, 1)), 1)


def _str_repeat(this: Any, args: List[Any]) -> str:
    count = to_number(_arg(args, 0))
    if math.isnan(count) or count < 0 or count > 1_000_000:
        raise SymbolicError("unsupported repeat count")
    return to_string(this) * int(count)


def _str_index_of(this: Any, args: List[Any]) -> float:
    return float(to_string(this).find(to_string(_arg(args, 0))))


_STRING_METHODS: Dict[str, NativeFunction] = {
    name: NativeFunction(name, impl)
    for name, impl in {
        "charAt": _str_char_at,
        "charCodeAt": _str_char_code_at,
        "at": _str_at,
        "concat": lambda this, args: to_string(this) + "".join(to_string(a) for a in args),
        "slice": _str_slice,
        "substr": _str_substr,
        "split": _str_split,
        "indexOf": _str_index_of,
        "replace": _str_replace,
        "repeat": _str_repeat,
        "toUpperCase": lambda this, args: to_string(this).upper(),
        "toLowerCase": lambda this, args: to_string(this).lower(),
        "trim": lambda this, args: to_string(this).strip(),
        "toString": lambda this, args: to_string(this),
        "anchor": _html("a", "name"),
        "big": _html("big"),
        "blink": _html("blink"),
        "bold": _html("b"),
        "fixed": _html("tt"),
        "fontcolor": _html("font", "color"),
        "fontsize": _html("font", "size"),
        "italics": _html("i"),
        "link": _html("a", "href"),
        "small": _html("small"),
        "strike": _html("strike"),
        "sub": _html("sub"),
        "sup": _html("sup"),
    }.items()
}


def _this_array(this: Any) -> JSArray:
    if not isinstance(this, JSArray):
        raise SymbolicError("array method called on a non-array")
    return this


def _arr_join(this: Any, args: List[Any]) -> str:
    separator = _arg(args, 0)
    separator = "," if separator is UNDEFINED else to_string(separator)
    return separator.join(
        "" if item is UNDEFINED or item is NULL else to_string(item) for item in _this_array(this).items
    )


def _arr_concat(this: Any, args: List[Any]) -> JSArray:
    items = list(_this_array(this).items)
    for arg in args:
        if isinstance(arg, JSArray):
            items.extend(arg.items)
        else:
            items.append(arg)
    return JSArray(items)


def _arr_slice(this: Any, args: List[Any]) -> JSArray:
    items = _this_array(this).items
    start = _relative_index(_arg(args, 0), len(items), 0)
    end = _relative_index(_arg(args, 1), len(items), len(items))
    return JSArray(items[start:end])


def _arr_at(this: Any, args: List[Any]) -> Any:
    items = _this_array(this).items
    index = int(to_number(_arg(args, 0)) or 0)
    if index < 0:
        index += len(items)
    return items[index] if 0 <= index < len(items) else UNDEFINED


def _arr_flat(this: Any, args: List[Any]) -> JSArray:
    items: List[Any] = []
    for item in _this_array(this).items:
        if isinstance(item, JSArray):
            items.extend(item.items)
        else:
            items.append(item)
    return JSArray(items)


def _arr_fill(this: Any, args: List[Any]) -> JSArray:
    array = _this_array(this)
    array.items = [_arg(args, 0)] * len(array.items)
    return array


def _arr_index_of(this: Any, args: List[Any]) -> float:
    needle = _arg(args, 0)
    for index, item in enumerate(_this_array(this).items):
        if strict_equals(item, needle):
            return float(index)
    return -1.0


def _arr_reverse(this: Any, args: List[Any]) -> JSArray:
    array = _this_array(this)
    array.items.reverse()
    return array


def _arr_push(this: Any, args: List[Any]) -> float:
    array = _this_array(this)
    array.items.extend(args)
    return float(len(array.items))


def _arr_pop(this: Any, args: List[Any]) -> Any:
    array = _this_array(this)
    return array.items.pop() if array.items else UNDEFINED


def _arr_shift(this: Any, args: List[Any]) -> Any:
    array = _this_array(this)
    return array.items.pop(0) if array.items else UNDEFINED


_ARRAY_METHODS: Dict[str, NativeFunction] = {
    name: NativeFunction(name, impl)
    for name, impl in {
        "join": _arr_join,
        "toString": _arr_join,
        "concat": _arr_concat,
        "slice": _arr_slice,
        "at": _arr_at,
        "flat": _arr_flat,
        "fill": _arr_fill,
        "indexOf": _arr_index_of,
        "includes": lambda this, args: _arr_index_of(this, args) >= 0,
        "reverse": _arr_reverse,
        "push": _arr_push,
        "pop": _arr_pop,
        "shift": _arr_shift,
        "entries": lambda this, args: JSObject(tag="Array Iterator"),
        "keys": lambda this, args: JSObject(tag="Array Iterator"),
        "values": lambda this, args: JSObject(tag="Array Iterator"),
        # Callback-taking methods only matter for their source text.
        "filter": None,
        "map": None,
        "sort": None,
        "find": None,
        "forEach": None,
    }.items()
}


def _radix_string(value: float, radix: int) -> str:
    if radix == 10 or not math.isfinite(value):
        return number_to_string(value)
    if not float(value).is_integer():
        raise SymbolicError("fractional radix conversion is not supported")
    number = int(value)
    digits = string.digits + string.ascii_lowercase
    if number == 0:
        return "0"
    sign = "-" if number < 0 else ""
    number = abs(number)
    out = []
    while number:
        number, remainder = divmod(number, radix)
        out.append(digits[remainder])
    return sign + "".join(reversed(out))


def _num_to_string(this: Any, args: List[Any]) -> str:
    radix = _arg(args, 0)
    radix = 10 if radix is UNDEFINED else int(to_number(radix))
    if not 2 <= radix <= 36:
        raise SymbolicError("toString() radix must be between 2 and 36")
    return _radix_string(to_number(this), radix)


_NUMBER_METHODS: Dict[str, NativeFunction] = {
    "toString": NativeFunction("toString", _num_to_string),
}

_ESCAPE_SAFE = frozenset(string.ascii_letters + string.digits + "@*_+-./")


def _escape(this: Any, args: List[Any]) -> str:
    out = []
    for char in to_string(_arg(args, 0)):
        code = ord(char)
        if char in _ESCAPE_SAFE:
            out.append(char)
        elif code < 256:
            out.append(f"%{code:02X}")
        else:
            out.append(f"%u{code:04X}")
    return "".join(out)


_UNESCAPE_RE = re.compile(r"%u([0-9a-fA-F]{4})|%([0-9a-fA-F]{2})")


def _unescape(this: Any, args: List[Any]) -> str:
    return _UNESCAPE_RE.sub(lambda m: chr(int(m.group(1) or m.group(2), 16)), to_string(_arg(args, 0)))


def _atob(this: Any, args: List[Any]) -> str:
    try:
        return base64.b64decode(to_string(_arg(args, 0)), validate=True).decode("latin-1")
    except (binascii.Error, ValueError) as exc:
        raise SymbolicError(f"atob failed: {exc}") from exc


def _btoa(this: Any, args: List[Any]) -> str:
    try:
        return base64.b64encode(to_string(_arg(args, 0)).encode("latin-1")).decode("ascii")
    except UnicodeEncodeError as exc:
        raise SymbolicError(f"btoa failed: {exc}") from exc


def _parse_int(this: Any, args: List[Any]) -> float:
    text = to_string(_arg(args, 0)).strip()
    radix_arg = _arg(args, 1)
    radix = 0 if radix_arg is UNDEFINED else to_int32(radix_arg)
    sign = 1
    if text[:1] in "+-" and text:
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if radix in (0, 16) and text[:2].lower() == "0x":
        text, radix = text[2:], 16
    radix = radix or 10
    if not 2 <= radix <= 36:
        return math.nan
    digits = string.digits + string.ascii_lowercase
    valid = digits[:radix]
    prefix = ""
    for char in text.lower():
        if char not in valid:
            break
        prefix += char
    if not prefix:
        return math.nan
    return float(sign * int(prefix, radix))


def _function_ctor(this: Any, args: List[Any]) -> CompiledFunction:
    body = to_string(args[-1]) if args else ""
    return CompiledFunction(body)


def _array_ctor(this: Any, args: List[Any]) -> JSArray:
    if len(args) == 1 and isinstance(args[0], (int, float)) and not isinstance(args[0], bool):
        size = args[0]
        if size < 0 or size > 1_000_000 or not float(size).is_integer():
            raise SymbolicError("invalid array length")
        return JSArray([UNDEFINED] * int(size))
    return JSArray(list(args))


FUNCTION_CTOR = NativeFunction("Function", _function_ctor)
STRING_CTOR = NativeFunction(
    "String",
    lambda this, args: to_string(args[0]) if args else "",
    {"fromCharCode": NativeFunction("fromCharCode", lambda this, args: "".join(chr(to_int32(a) & 0xFFFF) for a in args))},
)
NUMBER_CTOR = NativeFunction("Number", lambda this, args: to_number(args[0]) if args else 0.0)
BOOLEAN_CTOR = NativeFunction("Boolean", lambda this, args: truthy(_arg(args, 0)))
ARRAY_CTOR = NativeFunction("Array", _array_ctor)
OBJECT_CTOR = NativeFunction("Object", lambda this, args: JSObject())
REGEXP_CTOR = NativeFunction("RegExp", lambda this, args: JSRegExp(to_string(_arg(args, 0))))

GLOBALS: Dict[str, Any] = {
    "Function": FUNCTION_CTOR,
    "String": STRING_CTOR,
    "Number": NUMBER_CTOR,
    "Boolean": BOOLEAN_CTOR,
    "Array": ARRAY_CTOR,
    "Object": OBJECT_CTOR,
    "RegExp": REGEXP_CTOR,
    "escape": NativeFunction("escape", _escape),
    "unescape": NativeFunction("unescape", _unescape),
    "atob": NativeFunction("atob", _atob),
    "btoa": NativeFunction("btoa", _btoa),
    "parseInt": NativeFunction("parseInt", _parse_int),
}


def get_member(target: Any, key: str) -> Any:
    if target is UNDEFINED or target is NULL:
        raise SymbolicError(f"cannot read property {key!r} of {to_string(target)}")
    if isinstance(target, str):
        index = _array_index(key)
        if index is not None:
            return target[index] if index < len(target) else UNDEFINED
        if key == "length":
            return float(len(target))
        if key == "constructor":
            return STRING_CTOR
        return _STRING_METHODS.get(key, UNDEFINED)
    if isinstance(target, bool):
        if key == "constructor":
            return BOOLEAN_CTOR
        if key == "toString":
            return _STRING_METHODS["toString"]
        return UNDEFINED
    if isinstance(target, (int, float)):
        if key == "constructor":
            return NUMBER_CTOR
        return _NUMBER_METHODS.get(key, UNDEFINED)
    if isinstance(target, JSArray):
        index = _array_index(key)
        if index is not None:
            return target.items[index] if index < len(target.items) else UNDEFINED
        if key == "length":
            return float(len(target.items))
        if key == "constructor":
            return ARRAY_CTOR
        return _ARRAY_METHODS.get(key, UNDEFINED)
    if isinstance(target, JSObject):
        if key in target.props:
            return target.props[key]
        if key == "constructor":
            return OBJECT_CTOR
        return UNDEFINED
    if isinstance(target, JSRegExp):
        if key == "constructor":
            return REGEXP_CTOR
        if key == "source":
            return target.pattern
        return UNDEFINED
    if isinstance(target, NativeFunction):
        if key in target.props:
            return target.props[key]
        if key == "constructor":
            return FUNCTION_CTOR
        if key == "name":
            return target.name
        return UNDEFINED
    if isinstance(target, CompiledFunction):
        if key == "constructor":
            return FUNCTION_CTOR
        return UNDEFINED
    raise SymbolicError(f"unsupported member access on {type(target).__name__}")


def set_member(target: Any, key: str, value: Any) -> None:
    if target is UNDEFINED or target is NULL:
        raise SymbolicError(f"cannot set property {key!r} of {to_string(target)}")
    if isinstance(target, JSObject):
        target.props[key] = value
    elif isinstance(target, JSArray):
        index = _array_index(key)
        if index is None:
            return
        if index > 1_000_000:
            raise SymbolicError("array index out of supported range")
        while len(target.items) <= index:
            target.items.append(UNDEFINED)
        target.items[index] = value
    # Writes to primitives and built-ins are dropped.


# ---------------------------------------------------------------------------
# Evaluator


def _return_statement(body: str):
    """The statement of ``body`` when it is exactly one ``return``."""

    try:
        tree = parse(f"(function(){{{body}\n}})")
    except JSParseError:
        return None
    if len(tree.body) != 1 or node_type(tree.body[0]) != "ExpressionStatement":
        return None
    function = tree.body[0].expression
    if node_type(function) != "FunctionExpression":
        return None
    statements = function.body.body or []
    if len(statements) != 1 or node_type(statements[0]) != "ReturnStatement":
        return None
    return statements[0]


class SymbolicEvaluator:
    """Evaluate a JSFuck / JJEncode program without running its payload."""

    def __init__(self, max_steps: int = DEFAULT_MAX_STEPS) -> None:
        self.max_steps = max_steps
        self.steps = 0
        self.env: Dict[str, Any] = dict(GLOBALS)

    def decode(self, code: str) -> str:
        """Return the source handed to ``Function`` (or the string the program builds).

        Raises :class:`SymbolicError` when the program cannot be resolved and
        :class:`~jsdeob.exceptions.JSParseError` when it does not parse.
        """

        tree = parse(code)
        try:
            value = self.run(tree)
        except PayloadCaptured as captured:
            LOG.debug("captured Function payload after %d steps", self.steps)
            return captured.body
        except RecursionError as exc:
            raise SymbolicError("expression nesting too deep") from exc
        if isinstance(value, CompiledFunction):
            return value.body
        if isinstance(value, str):
            return value
        raise SymbolicError("program does not build a payload")

    def run(self, program) -> Any:
        result: Any = UNDEFINED
        for statement in program.body or []:
            result = self.execute(statement)
        return result

    def execute(self, statement) -> Any:
        kind = node_type(statement)
        if kind == "ExpressionStatement":
            return self.evaluate(statement.expression)
        if kind == "VariableDeclaration":
            for declarator in statement.declarations:
                if node_type(declarator.id) != "Identifier":
                    raise SymbolicError("destructuring is not supported")
                value = UNDEFINED if declarator.init is None else self.evaluate(declarator.init)
                self.env[declarator.id.name] = value
            return UNDEFINED
        if kind == "EmptyStatement":
            return UNDEFINED
        raise SymbolicError(f"unsupported statement {kind}")

    def evaluate(self, node) -> Any:
        self.steps += 1
        if self.steps > self.max_steps:
            raise SymbolicError("evaluation budget exhausted")
        handler = getattr(self, f"_eval_{node_type(node)}", None)
        if handler is None:
            raise SymbolicError(f"unsupported expression {node_type(node)}")
        return handler(node)

    def _eval_Literal(self, node) -> Any:
        regex = getattr(node, "regex", None)
        if regex is not None:
            return JSRegExp(regex.pattern, regex.flags or "")
        value = node.value
        if value is None:
            return NULL
        if isinstance(value, bool) or isinstance(value, str):
            return value
        return float(value)

    def _eval_Identifier(self, node) -> Any:
        name = node.name
        if name in self.env:
            return self.env[name]
        if name == "undefined":
            return UNDEFINED
        if name == "NaN":
            return math.nan
        if name == "Infinity":
            return math.inf
        raise SymbolicError(f"unknown identifier {name}")

    def _eval_ArrayExpression(self, node) -> JSArray:
        return JSArray([UNDEFINED if element is None else self.evaluate(element) for element in node.elements])

    def _eval_ObjectExpression(self, node) -> JSObject:
        obj = JSObject()
        for prop in node.properties:
            if node_type(prop) != "Property" or prop.kind != "init":
                raise SymbolicError("only plain object properties are supported")
            if prop.computed:
                key = property_key(self.evaluate(prop.key))
            elif node_type(prop.key) == "Identifier":
                key = prop.key.name
            else:
                key = property_key(self._eval_Literal(prop.key))
            obj.props[key] = self.evaluate(prop.value)
        return obj

    def _eval_UnaryExpression(self, node) -> Any:
        operator = node.operator
        if operator == "typeof" and node_type(node.argument) == "Identifier" and node.argument.name not in self.env:
            return "undefined"
        value = self.evaluate(node.argument)
        if operator == "!":
            return not truthy(value)
        if operator == "+":
            return to_number(value)
        if operator == "-":
            return -to_number(value)
        if operator == "~":
            return float(~to_int32(value))
        if operator == "typeof":
            return type_of(value)
        if operator == "void":
            return UNDEFINED
        raise SymbolicError(f"unsupported unary operator {operator}")

    def _reference(self, target):
        """Return ``(getter, setter)`` for an assignable expression."""

        kind = node_type(target)
        if kind == "Identifier":
            name = target.name

            def get_identifier() -> Any:
                return self._eval_Identifier(target)

            def set_identifier(value: Any) -> None:
                self.env[name] = value

            return get_identifier, set_identifier
        if kind == "MemberExpression":
            obj = self.evaluate(target.object)
            key = self._member_key(target)
            return (lambda: get_member(obj, key)), (lambda value: set_member(obj, key, value))
        raise SymbolicError(f"unsupported assignment target {kind}")

    def _eval_UpdateExpression(self, node) -> float:
        getter, setter = self._reference(node.argument)
        old = to_number(getter())
        new = old + 1 if node.operator == "++" else old - 1
        setter(new)
        return new if node.prefix else old

    def _eval_AssignmentExpression(self, node) -> Any:
        getter, setter = self._reference(node.left)
        if node.operator == "=":
            value = self.evaluate(node.right)
        elif node.operator == "+=":
            value = self._binary("+", getter(), self.evaluate(node.right))
        elif node.operator == "-=":
            value = self._binary("-", getter(), self.evaluate(node.right))
        else:
            raise SymbolicError(f"unsupported assignment operator {node.operator}")
        setter(value)
        return value

    def _eval_BinaryExpression(self, node) -> Any:
        # Long ``a + b + c ...`` chains are left-nested; walk the spine
        # iteratively.
        operands = []
        operators = []
        current = node
        while node_type(current) == "BinaryExpression":
            operands.append(current.right)
            operators.append(current.operator)
            current = current.left
        value = self.evaluate(current)
        for operator, operand in zip(reversed(operators), reversed(operands)):
            value = self._binary(operator, value, self.evaluate(operand))
        return value

    def _binary(self, operator: str, left: Any, right: Any) -> Any:
        if operator == "+":
            left, right = to_primitive(left), to_primitive(right)
            if isinstance(left, str) or isinstance(right, str):
                return to_string(left) + to_string(right)
            return to_number(left) + to_number(right)
        if operator in ("-", "*", "/", "%"):
            a, b = to_number(left), to_number(right)
            if operator == "-":
                return a - b
            if operator == "*":
                return a * b
            if operator == "/":
                if b == 0:
                    if a == 0 or math.isnan(a):
                        return math.nan
                    return math.copysign(math.inf, a) * math.copysign(1.0, b)
                return a / b
            if b == 0 or math.isinf(a) or math.isnan(a) or math.isnan(b):
                return math.nan
            return a if math.isinf(b) else math.fmod(a, b)
        if operator == "==":
            return loose_equals(left, right)
        if operator == "!=":
            return not loose_equals(left, right)
        if operator == "===":
            return strict_equals(left, right)
        if operator == "!==":
            return not strict_equals(left, right)
        if operator in ("<", ">", "<=", ">="):
            a, b = to_primitive(left), to_primitive(right)
            if not (isinstance(a, str) and isinstance(b, str)):
                a, b = to_number(a), to_number(b)
                if math.isnan(a) or math.isnan(b):
                    return False
            return {"<": a < b, ">": a > b, "<=": a <= b, ">=": a >= b}[operator]
        raise SymbolicError(f"unsupported binary operator {operator}")

    def _eval_LogicalExpression(self, node) -> Any:
        left = self.evaluate(node.left)
        if node.operator == "&&":
            return self.evaluate(node.right) if truthy(left) else left
        if node.operator == "||":
            return left if truthy(left) else self.evaluate(node.right)
        raise SymbolicError(f"unsupported logical operator {node.operator}")

    def _eval_ConditionalExpression(self, node) -> Any:
        return self.evaluate(node.consequent if truthy(self.evaluate(node.test)) else node.alternate)

    def _eval_SequenceExpression(self, node) -> Any:
        value: Any = UNDEFINED
        for expression in node.expressions:
            value = self.evaluate(expression)
        return value

    def _member_key(self, node) -> str:
        if node.computed:
            return property_key(self.evaluate(node.property))
        return node.property.name

    def _eval_MemberExpression(self, node) -> Any:
        target = self.evaluate(node.object)
        return get_member(target, self._member_key(node))

    def _eval_CallExpression(self, node) -> Any:
        callee = node.callee
        if node_type(callee) == "MemberExpression":
            this = self.evaluate(callee.object)
            function = get_member(this, self._member_key(callee))
        else:
            this = UNDEFINED
            function = self.evaluate(callee)
        args = [self.evaluate(arg) for arg in node.arguments]
        return self.call(function, this, args)

    _eval_NewExpression = _eval_CallExpression

    def call(self, function: Any, this: Any, args: List[Any]) -> Any:
        if isinstance(function, NativeFunction):
            if function.impl is None:
                raise SymbolicError(f"{function.name}() is not supported")
            return function.impl(this, args)
        if isinstance(function, CompiledFunction):
            statement = _return_statement(function.body)
            if statement is None:
                raise PayloadCaptured(function.body)
            if statement.argument is None:
                return UNDEFINED
            return self.evaluate(statement.argument)
        raise SymbolicError(f"{to_string(function)[:40]} is not a function")


def decode_payload(code: str, max_steps: int = DEFAULT_MAX_STEPS) -> str:
    """Convenience wrapper around :meth:`SymbolicEvaluator.decode`."""

    return SymbolicEvaluator(max_steps=max_steps).decode(code)


__all__ = [
    "CompiledFunction",
    "JSArray",
    "JSObject",
    "NativeFunction",
    "PayloadCaptured",
    "SymbolicError",
    "SymbolicEvaluator",
    "UNDEFINED",
    "decode_payload",
    "get_member",
    "number_to_string",
    "to_number",
    "to_string",
    "truthy",
]
