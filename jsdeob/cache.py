"""Result cache keyed by a digest of the input and the stage switches."""

from __future__ import annotations

import hashlib
import json
import logging
from collections import OrderedDict
from typing import Optional

from .models import DeobfuscateOptions, DeobfuscateResult

LOG = logging.getLogger(__name__)

KEY_PREFIX_LENGTH = 1000


def cache_key(options: DeobfuscateOptions) -> str:
    """md5 over the first 1000 characters plus the stage switches.

    ``rename_variables`` and ``llm`` are not part of the key.
    """

    payload = {
        "code": options.code[:KEY_PREFIX_LENGTH],
        "aggressive": options.aggressive,
        "advanced": options.advanced,
        "jsvmp": options.jsvmp,
        "astOptimize": options.ast_optimize,
        "unpack": options.unpack,
        "auto": options.auto,
    }
    blob = json.dumps(payload, ensure_ascii=False)
    return hashlib.md5(blob.encode("utf-8")).hexdigest()


class ResultCache:
    """Bounded mapping evicting the oldest inserted key first."""

    def __init__(self, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError("cache capacity must be positive")
        self.capacity = capacity
        self._entries: "OrderedDict[str, DeobfuscateResult]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[DeobfuscateResult]:
        # Lookups do not refresh insertion order.
        return self._entries.get(key)

    def put(self, key: str, result: DeobfuscateResult) -> None:
        if key not in self._entries and len(self._entries) >= self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            LOG.debug("cache full, evicting %s", evicted)
        self._entries[key] = result

    def clear(self) -> None:
        self._entries.clear()


__all__ = ["KEY_PREFIX_LENGTH", "ResultCache", "cache_key"]
