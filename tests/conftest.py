"""Test configuration ensuring the project source tree is importable."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

ROOT = Path(__file__).resolve().parent.parent

root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


class FakeProvider:
    """AI provider double: replays canned replies and records every request."""

    def __init__(self, *replies: Any) -> None:
        self.replies: List[Any] = list(replies)
        self.requests: List[Dict[str, Any]] = []

    async def chat(self, messages, options):
        self.requests.append({"messages": messages, "options": options})
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, BaseException):
            raise reply
        return {"content": reply}


@pytest.fixture
def fake_provider():
    return FakeProvider


VM_SAMPLE = """
var bytecode = new Array(3, 1, 4, 1, 5, 9, 2, 6);
var stack = [];
var pc = 0;
var running = true;
while (running) {
  switch (bytecode[pc++]) {
    case 0: stack.push(1); break;
    case 1: stack.push(stack.pop() + stack.pop()); break;
    case 2: var a = stack.pop(); break;
    case 3: if (stack.length) { pc = 0; } break;
    case 4: console.log(stack); break;
    case 5: pc = bytecode[pc]; break;
    case 6: stack.unshift(0); break;
    case 7: running = false; break;
    case 8: stack.shift(); break;
    case 9: a = 2; break;
    case 10: foo(); break;
    case 11: break;
  }
}
"""


@pytest.fixture
def vm_sample() -> str:
    return VM_SAMPLE
