"""Wrapper around an injected chat-completion provider.

The provider is any object exposing ``chat(messages, options)`` (coroutine or
plain function) returning either a mapping with a ``content`` key or an object
with a ``content`` attribute.  Transport concerns live entirely in the
provider; this module only builds prompts and parses replies.
"""

from __future__ import annotations

import inspect
import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .config import DeobfuscatorConfig
from .exceptions import LLMResponseError

LOG = logging.getLogger(__name__)

Message = Dict[str, str]

_FENCE_RE = re.compile(r"```(?:[A-Za-z0-9_+-]*)\s*\n(.*?)```", re.DOTALL)
_MAX_PROMPT_CODE = 8000


def content_of(response: Any) -> str:
    """Return the text of a provider response."""

    if response is None:
        raise LLMResponseError("empty response from AI provider")
    if isinstance(response, str):
        return response
    if isinstance(response, Mapping):
        content = response.get("content")
    else:
        content = getattr(response, "content", None)
    if not isinstance(content, str):
        raise LLMResponseError("AI response has no text content")
    return content


def safe_parse_json(text: str) -> Any:
    """``json.loads`` returning ``None`` instead of raising."""

    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def _extract_balanced(text: str, opener: str, closer: str) -> Any:
    start = text.find(opener)
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == opener:
                depth += 1
            elif char == closer:
                depth -= 1
                if depth == 0:
                    parsed = safe_parse_json(text[start : index + 1])
                    if parsed is not None:
                        return parsed
                    break
        start = text.find(opener, start + 1)
    return None


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the whole reply as JSON, or the first embedded ``{...}`` that parses."""

    parsed = safe_parse_json(text.strip())
    if isinstance(parsed, dict):
        return parsed
    for block in _FENCE_RE.findall(text):
        parsed = safe_parse_json(block.strip())
        if isinstance(parsed, dict):
            return parsed
    parsed = _extract_balanced(text, "{", "}")
    return parsed if isinstance(parsed, dict) else None


def extract_json_array(text: str) -> Optional[List[Any]]:
    parsed = safe_parse_json(text.strip())
    if isinstance(parsed, list):
        return parsed
    for block in _FENCE_RE.findall(text):
        parsed = safe_parse_json(block.strip())
        if isinstance(parsed, list):
            return parsed
    parsed = _extract_balanced(text, "[", "]")
    return parsed if isinstance(parsed, list) else None


def extract_code_block(text: str) -> Optional[str]:
    """Return the first fenced code block that is not a JSON document."""

    for block in _FENCE_RE.findall(text):
        block = block.strip()
        if not block:
            continue
        if isinstance(safe_parse_json(block), (dict, list)):
            continue
        return block
    return None


def _truncate(code: str, limit: int = _MAX_PROMPT_CODE) -> str:
    if len(code) <= limit:
        return code
    return code[:limit] + "\n/* ... truncated ... */"


class LLMService:
    """Prompt builders plus a thin ``chat`` call over the provider."""

    def __init__(self, provider: Any, config: Optional[DeobfuscatorConfig] = None) -> None:
        self.provider = provider
        self.config = config or DeobfuscatorConfig.from_env()

    async def chat(
        self,
        messages: Sequence[Message],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Send ``messages`` and return the reply text.

        Raises whatever the provider raises, or :class:`LLMResponseError` when
        the reply carries no text.
        """

        options = {
            "temperature": self.config.llm_temperature if temperature is None else temperature,
            "maxTokens": self.config.llm_max_tokens if max_tokens is None else max_tokens,
        }
        LOG.debug("AI request: %d messages, options=%s", len(messages), options)
        response = self.provider.chat(list(messages), options)
        if inspect.isawaitable(response):
            response = await response
        return content_of(response)

    def generate_deobfuscation_prompt(self, code: str) -> List[Message]:
        return [
            {
                "role": "system",
                "content": (
                    "You are an advanced JavaScript deobfuscation expert. Explain "
                    "transformations and produce cleaned code guidance."
                ),
            },
            {
                "role": "user",
                "content": "\n\n".join(
                    [
                        "Analyze obfuscation techniques and provide a concise remediation strategy.",
                        "Code:",
                        _truncate(code),
                    ]
                ),
            },
        ]

    def generate_vm_analysis_prompt(self, code: str, vm_type: str, instructions: Sequence[Any] = ()) -> List[Message]:
        """Ask for the structure of a bytecode interpreter as strict JSON."""

        lines = [
            f"VM type: {vm_type}",
            "Return strict JSON with keys: vmStructure, instructionMap, "
            "restorationApproach, simplifiedLogic and, if you can produce it, "
            "restoredCode (equivalent plain JavaScript).",
        ]
        if instructions:
            sample = [getattr(item, "to_json", lambda item=item: item)() for item in list(instructions)[:20]]
            lines.append("Known instructions: " + json.dumps(sample, default=str))
        lines.extend(["Code:", _truncate(code)])
        return [
            {
                "role": "system",
                "content": "You are a reverse engineer specialising in JavaScript virtual machine protection. Return strict JSON only.",
            },
            {"role": "user", "content": "\n\n".join(lines)},
        ]

    def generate_string_array_prompt(self, code: str, array_name: str) -> List[Message]:
        return [
            {
                "role": "system",
                "content": "You recover string tables from obfuscated JavaScript. Return a JSON array of strings only.",
            },
            {
                "role": "user",
                "content": "\n\n".join(
                    [
                        f"Recover the final contents of the string array `{array_name}` after any rotation.",
                        "Code:",
                        _truncate(code),
                    ]
                ),
            },
        ]

    def generate_decode_prompt(self, code: str, encoding: str) -> List[Message]:
        return [
            {
                "role": "system",
                "content": "You decode esoteric JavaScript encodings without executing them. Return strict JSON only.",
            },
            {
                "role": "user",
                "content": "\n\n".join(
                    [
                        f"Encoding: {encoding}",
                        'Return JSON: {"decoded": "<plain JavaScript>", "confidence": <0..1>}.',
                        "Code:",
                        _truncate(code),
                    ]
                ),
            },
        ]


__all__ = [
    "LLMService",
    "content_of",
    "extract_code_block",
    "extract_json_array",
    "extract_json_object",
    "safe_parse_json",
]
