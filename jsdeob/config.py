"""Runtime configuration for the deobfuscation pipeline."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Callable, Mapping, Optional

LOG = logging.getLogger(__name__)

_ENV_KEYS = {
    "cache_size": "JSDEOB_CACHE_SIZE",
    "jsvmp_timeout_ms": "JSDEOB_JSVMP_TIMEOUT_MS",
    "packer_max_iterations": "JSDEOB_PACKER_MAX_ITERATIONS",
    "llm_temperature": "JSDEOB_LLM_TEMPERATURE",
    "llm_max_tokens": "JSDEOB_LLM_MAX_TOKENS",
    "log_level": "LOG_LEVEL",
}


@dataclass(frozen=True)
class DeobfuscatorConfig:
    """Tunables shared by the orchestrator and its sub-pipelines."""

    cache_size: int = 100
    jsvmp_timeout_ms: int = 30000
    packer_max_iterations: int = 5
    llm_temperature: float = 0.3
    llm_max_tokens: int = 2000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DeobfuscatorConfig":
        """Build a config from ``environ`` (defaults to :data:`os.environ`).

        Values that do not convert to the field type are ignored with a
        warning and the default is kept.
        """

        env = os.environ if environ is None else environ
        values = {}
        for item in fields(cls):
            key = _ENV_KEYS[item.name]
            raw = env.get(key)
            if raw is None or raw.strip() == "":
                continue
            convert: Callable[[str], object] = {
                "int": int,
                "float": float,
                "str": str,
            }[item.type if isinstance(item.type, str) else item.type.__name__]
            try:
                value = convert(raw.strip())
            except ValueError:
                LOG.warning("ignoring malformed %s=%r", key, raw)
                continue
            if isinstance(value, (int, float)) and value < 0:
                LOG.warning("ignoring negative %s=%r", key, raw)
                continue
            values[item.name] = value
        return cls(**values)


__all__ = ["DeobfuscatorConfig"]
