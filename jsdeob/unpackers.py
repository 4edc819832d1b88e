"""Static unpackers for p.a.c.k.e.r, AAEncode and percent-encoded payloads.

Nothing in here evaluates the wrapped code: every decoder reconstructs the
payload from the literal arguments of the wrapper.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import unquote

import jsbeautifier

from .exceptions import JSParseError, UnpackingError
from .jsast import literal_string_value

LOG = logging.getLogger(__name__)

BASE62_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"

_PACKER_RE = re.compile(
    r"eval\s*\(\s*function\s*\(\s*p\s*,\s*a\s*,\s*c\s*,\s*k\s*,\s*e\s*,\s*[dr]\s*\)",
)
_WORD_RE = re.compile(r"\b\w+\b")
_SPLIT_SUFFIX_RE = re.compile(r"""^\.split\(\s*(['"])\|\1\s*\)$""")
_INT_RE = re.compile(r"^\d+$")


@dataclass
class PackerParams:
    """The literal arguments handed to a packer function."""

    p: str
    a: int
    c: int
    k: List[str]
    e: object = None
    d: object = None


@dataclass
class PackerResult:
    code: str
    success: bool
    iterations: int
    warnings: List[str] = field(default_factory=list)


@dataclass
class UnpackResult:
    type: str
    success: bool
    code: str


def _skip_string(text: str, index: int) -> int:
    """Return the index just past the string literal starting at ``index``."""

    quote = text[index]
    index += 1
    while index < len(text):
        char = text[index]
        if char == "\\":
            index += 2
            continue
        if char == quote:
            return index + 1
        index += 1
    raise UnpackingError("unterminated string literal in packer arguments")


def _match_delimited(text: str, start: int, opener: str, closer: str) -> int:
    """Return the index of the ``closer`` balancing ``text[start] == opener``."""

    depth = 0
    index = start
    while index < len(text):
        char = text[index]
        if char in "'\"":
            index = _skip_string(text, index)
            continue
        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return index
        index += 1
    raise UnpackingError(f"unbalanced {opener!r} in packer source")


def _split_arguments(text: str) -> List[str]:
    """Split a call argument list on top-level commas."""

    parts: List[str] = []
    depth = 0
    current = 0
    index = 0
    while index < len(text):
        char = text[index]
        if char in "'\"":
            index = _skip_string(text, index)
            continue
        if char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
            if depth < 0:
                raise UnpackingError("unbalanced bracket in packer arguments")
        elif char == "," and depth == 0:
            parts.append(text[current:index].strip())
            current = index + 1
        index += 1
    if depth != 0:
        raise UnpackingError("unbalanced bracket in packer arguments")
    parts.append(text[current:].strip())
    return parts


def _quoted_prefix(token: str) -> Optional[Tuple[str, str]]:
    """Split ``'...'<suffix>`` into (literal source, suffix)."""

    if not token or token[0] not in "'\"":
        return None
    try:
        end = _skip_string(token, 0)
    except UnpackingError:
        return None
    return token[:end], token[end:].strip()


class PackerDeobfuscator:
    """Unpacker for Dean Edwards' ``eval(function(p,a,c,k,e,d){...})`` packer."""

    def __init__(self, max_iterations: int = 5) -> None:
        self.max_iterations = max_iterations

    @staticmethod
    def detect(code: str) -> bool:
        return bool(_PACKER_RE.search(code))

    async def deobfuscate(self, code: str, max_iterations: Optional[int] = None) -> PackerResult:
        """Unpack nested packer layers until the output stops being packed."""

        limit = self.max_iterations if max_iterations is None else max_iterations
        warnings: List[str] = []
        current = code
        iterations = 0
        try:
            while iterations < limit and self.detect(current):
                unpacked = self.unpack(current)
                if unpacked == current:
                    warnings.append(f"Packer unpacking failed at layer {iterations + 1}; keeping input")
                    break
                current = unpacked
                iterations += 1
                LOG.debug("packer layer %d unpacked (%d chars)", iterations, len(current))
        except Exception as exc:
            LOG.warning("packer unpacking failed: %s", exc)
            warnings.append(f"Packer unpacking failed: {exc}")
            return PackerResult(code=code, success=False, iterations=iterations, warnings=warnings)
        if iterations >= limit and self.detect(current):
            warnings.append(f"Stopped after {limit} packer layers")
        return PackerResult(code=current, success=True, iterations=iterations, warnings=warnings)

    def unpack(self, code: str) -> str:
        """Unpack a single packer layer; unparseable input is returned unchanged."""

        match = _PACKER_RE.search(code)
        if not match:
            return code
        try:
            args = self._argument_source(code, match.end())
        except UnpackingError as exc:
            LOG.debug("packer argument list not found: %s", exc)
            return code
        params = self.parse_packer_params(args)
        if params is None:
            return code
        return self.execute_unpacker(params)

    def _argument_source(self, code: str, offset: int) -> str:
        body_start = code.find("{", offset)
        if body_start < 0:
            raise UnpackingError("packer function body not found")
        body_end = _match_delimited(code, body_start, "{", "}")
        call_start = body_end + 1
        while call_start < len(code) and code[call_start].isspace():
            call_start += 1
        if call_start < len(code) and code[call_start] == ")":
            # ``eval(function(...){...})(args)`` form
            call_start += 1
            while call_start < len(code) and code[call_start].isspace():
                call_start += 1
        if call_start >= len(code) or code[call_start] != "(":
            raise UnpackingError("packer call arguments not found")
        call_end = _match_delimited(code, call_start, "(", ")")
        return code[call_start + 1 : call_end]

    def parse_packer_params(self, args: str) -> Optional[PackerParams]:
        """Extract ``(p, a, c, k, e, d)`` from the argument source, or ``None``."""

        try:
            parts = _split_arguments(args)
        except UnpackingError:
            return None
        if len(parts) < 4:
            return None
        payload = _quoted_prefix(parts[0])
        keywords = _quoted_prefix(parts[3])
        if payload is None or keywords is None or payload[1]:
            return None
        if not _INT_RE.match(parts[1]) or not _INT_RE.match(parts[2]):
            return None
        if keywords[1] and not _SPLIT_SUFFIX_RE.match(keywords[1]):
            return None
        try:
            p = literal_string_value(payload[0])
            k = literal_string_value(keywords[0])
        except JSParseError:
            return None
        return PackerParams(
            p=p,
            a=int(parts[1]),
            c=int(parts[2]),
            k=k.split("|"),
            e=parts[4] if len(parts) > 4 else None,
            d=parts[5] if len(parts) > 5 else None,
        )

    def execute_unpacker(self, params: PackerParams) -> str:
        """Substitute dictionary words back into the payload."""

        radix = params.a
        if radix < 2 or radix > len(BASE62_ALPHABET):
            raise UnpackingError(f"unsupported packer radix {radix}")
        symbols = list(params.k)
        while len(symbols) < params.c:
            symbols.append("")
        digits = {char: index for index, char in enumerate(BASE62_ALPHABET[:radix])}

        def lookup(match: re.Match[str]) -> str:
            word = match.group(0)
            index = 0
            for char in word:
                value = digits.get(char)
                if value is None:
                    return word
                index = index * radix + value
            if index < len(symbols) and symbols[index]:
                return symbols[index]
            return word

        return _WORD_RE.sub(lookup, params.p)

    @staticmethod
    def base(n: int, radix: int) -> str:
        """The packer's own encoder: digits ``0-9``, then ``a-z``, then ``A-Z``."""

        if n < 0:
            raise ValueError("negative packer index")
        prefix = "" if n < radix else PackerDeobfuscator.base(n // radix, radix)
        return prefix + BASE62_ALPHABET[n % radix]

    @staticmethod
    def beautify(code: str) -> str:
        """Re-indent unpacked output for display."""

        options = jsbeautifier.default_options()
        options.indent_size = 2
        return jsbeautifier.beautify(code, options)


# ---------------------------------------------------------------------------
# AAEncode

_AA_SIGIL_RE = re.compile("゜-゜|ﾟωﾟﾉ|ﾟДﾟ|ﾟΘﾟ")
_AA_SEPARATOR = "(ﾟДﾟ)[ﾟεﾟ]"
_AA_UNICODE_MARKER = "(oﾟｰﾟo)"
# The header also assigns ``(ﾟДﾟ)[ﾟεﾟ]``; the payload starts at the quote.
_AA_PAYLOAD_START = "(ﾟεﾟ+(ﾟДﾟ)[ﾟoﾟ]"
# Emoticon expressions for the digits 0..f, whitespace removed.
_AA_DIGITS = [
    ("(c^_^o)", "0"),
    ("(ﾟΘﾟ)", "1"),
    ("((o^_^o)-(ﾟΘﾟ))", "2"),
    ("(o^_^o)", "3"),
    ("(ﾟｰﾟ)", "4"),
    ("((ﾟｰﾟ)+(ﾟΘﾟ))", "5"),
    ("((o^_^o)+(o^_^o))", "6"),
    ("((ﾟｰﾟ)+(o^_^o))", "7"),
    ("((ﾟｰﾟ)+(ﾟｰﾟ))", "8"),
    ("((ﾟｰﾟ)+(ﾟｰﾟ)+(ﾟΘﾟ))", "9"),
    ("(ﾟДﾟ).ﾟωﾟﾉ", "a"),
    ("(ﾟДﾟ).ﾟΘﾟﾉ", "b"),
    ("(ﾟДﾟ)['c']", "c"),
    ("(ﾟДﾟ).ﾟｰﾟﾉ", "d"),
    ("(ﾟДﾟ).ﾟДﾟﾉ", "e"),
    ("(ﾟДﾟ)[ﾟΘﾟ]", "f"),
]
_AA_TAIL_RE = re.compile(r"\)\s*\(\s*ﾟΘﾟ\s*\)\s*\)\s*\(\s*'_'\s*\)\s*;?\s*$")
_QUOTED_RE = re.compile(r"""(['"])((?:\\.|(?!\1).)*)\1""", re.DOTALL)


class AAEncodeDeobfuscator:
    """Decoder for the emoticon-based AAEncode scheme."""

    @staticmethod
    def detect(code: str) -> bool:
        return bool(_AA_SIGIL_RE.search(code))

    async def deobfuscate(self, code: str) -> str:
        try:
            if _AA_SEPARATOR in re.sub(r"\s+", "", code):
                return self._decode_emoticons(code)
            return self._quoted_payload(code)
        except (UnpackingError, JSParseError, ValueError) as exc:
            LOG.debug("AAEncode decoding failed: %s", exc)
            return code

    def _decode_emoticons(self, code: str) -> str:
        compact = re.sub(r"\s+", "", _AA_TAIL_RE.sub("", code))
        start = compact.find(_AA_PAYLOAD_START)
        if start < 0:
            start = compact.find(_AA_SEPARATOR)
        chunks = compact[start:].split(_AA_SEPARATOR)[1:]
        if not chunks:
            raise UnpackingError("no AAEncode characters found")
        out: List[str] = []
        for chunk in chunks:
            chunk = chunk.strip("+")
            is_unicode = chunk.startswith(_AA_UNICODE_MARKER)
            if is_unicode:
                chunk = chunk[len(_AA_UNICODE_MARKER) :]
            for symbol, digit in sorted(_AA_DIGITS, key=lambda item: -len(item[0])):
                chunk = chunk.replace(symbol, digit)
            digits = chunk.replace("+", "")
            # The final chunk carries the wrapper's closing tokens.
            digits = re.match(r"[0-9a-f]*", digits).group(0)
            if not digits:
                raise UnpackingError("empty AAEncode character")
            out.append(chr(int(digits, 16 if is_unicode else 8)))
        return "".join(out)

    def _quoted_payload(self, code: str) -> str:
        match = _QUOTED_RE.search(code)
        if not match:
            raise UnpackingError("no quoted payload")
        return literal_string_value(match.group(0))


# ---------------------------------------------------------------------------
# URL encoding

_PERCENT_RE = re.compile(r"%[0-9A-Fa-f]{2}")


class URLEncodeDeobfuscator:
    """Percent-decoding for payloads made mostly of ``%XX`` escapes."""

    MIN_ESCAPES = 10
    MIN_DENSITY = 0.3

    @classmethod
    def detect(cls, code: str) -> bool:
        escapes = _PERCENT_RE.findall(code)
        if len(escapes) < cls.MIN_ESCAPES:
            return False
        return (len(escapes) * 3) / max(len(code), 1) >= cls.MIN_DENSITY

    async def deobfuscate(self, code: str) -> str:
        try:
            return unquote(code, errors="strict")
        except UnicodeDecodeError as exc:
            LOG.debug("malformed percent-encoding: %s", exc)
            return code


class UniversalUnpacker:
    """Try each unpacker in a fixed order: Packer, AAEncode, URLEncode."""

    def __init__(self, max_iterations: int = 5) -> None:
        self.packer = PackerDeobfuscator(max_iterations=max_iterations)
        self.aaencode = AAEncodeDeobfuscator()
        self.urlencode = URLEncodeDeobfuscator()

    async def deobfuscate(self, code: str) -> UnpackResult:
        if PackerDeobfuscator.detect(code):
            result = await self.packer.deobfuscate(code)
            return UnpackResult(type="Packer", success=result.success, code=result.code)
        if AAEncodeDeobfuscator.detect(code):
            decoded = await self.aaencode.deobfuscate(code)
            return UnpackResult(type="AAEncode", success=decoded != code, code=decoded)
        if URLEncodeDeobfuscator.detect(code):
            decoded = await self.urlencode.deobfuscate(code)
            return UnpackResult(type="URLEncode", success=decoded != code, code=decoded)
        return UnpackResult(type="Unknown", success=False, code=code)


__all__ = [
    "AAEncodeDeobfuscator",
    "BASE62_ALPHABET",
    "PackerDeobfuscator",
    "PackerParams",
    "PackerResult",
    "URLEncodeDeobfuscator",
    "UniversalUnpacker",
    "UnpackResult",
]
