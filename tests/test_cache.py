import hashlib
import json

import pytest

from jsdeob.cache import ResultCache, cache_key
from jsdeob.models import DeobfuscateOptions, DeobfuscateResult


def _result(code: str) -> DeobfuscateResult:
    return DeobfuscateResult(code, 0, 0.0, [], [], "")


def test_cache_key_matches_md5_of_switches():
    options = DeobfuscateOptions(code="x" * 1500, aggressive=True, jsvmp=False)
    payload = {
        "code": "x" * 1000,
        "aggressive": True,
        "advanced": None,
        "jsvmp": False,
        "astOptimize": None,
        "unpack": None,
        "auto": True,
    }
    expected = hashlib.md5(json.dumps(payload, ensure_ascii=False).encode("utf-8")).hexdigest()
    assert cache_key(options) == expected


def test_cache_key_ignores_rename_and_llm_and_tail():
    base = DeobfuscateOptions(code="a" * 1000 + "tail")
    assert cache_key(base) == cache_key(DeobfuscateOptions(code="a" * 1000 + "other", rename_variables=True, llm=True))
    assert cache_key(base) != cache_key(DeobfuscateOptions(code="a" * 1000, aggressive=True))


def test_cache_hit_returns_same_object():
    cache = ResultCache()
    result = _result("a")
    cache.put("k", result)
    assert cache.get("k") is result
    assert "k" in cache


def test_cache_evicts_oldest_inserted_key():
    cache = ResultCache(capacity=100)
    for index in range(101):
        cache.put(f"k{index}", _result(str(index)))
        if index == 50:
            # Reads do not refresh the entry.
            cache.get("k0")
    assert len(cache) == 100
    assert cache.get("k0") is None
    assert cache.get("k1") is not None
    assert cache.get("k100") is not None


def test_cache_overwrite_does_not_evict():
    cache = ResultCache(capacity=2)
    cache.put("a", _result("1"))
    cache.put("b", _result("2"))
    cache.put("a", _result("3"))
    assert len(cache) == 2
    assert cache.get("a").code == "3"


def test_cache_clear_and_capacity_validation():
    cache = ResultCache(capacity=1)
    cache.put("a", _result("1"))
    cache.clear()
    assert len(cache) == 0
    with pytest.raises(ValueError):
        ResultCache(capacity=0)
