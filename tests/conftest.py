"""Shared fixtures: an in-process Redis double and a scripted chat model."""
from __future__ import annotations

import re
import threading
from datetime import timedelta
from typing import Dict, Iterator, List, Optional

import pytest

from src.core.config import Config
from src.core.models import ChatMessage


# ══════════════════════════════════════════════════════════════════════════════
# Redis double
# ══════════════════════════════════════════════════════════════════════════════

def _redis_range(items: list, start: int, end: int) -> list:
    """Apply Redis inclusive start/end (negative = from the end) semantics."""
    n = len(items)
    if start < 0:
        start = max(n + start, 0)
    if end < 0:
        end = n + end
    end = min(end, n - 1)
    if start > end:
        return []
    return items[start:end + 1]


def _glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Redis MATCH syntax: ``*``, ``?``, ``[...]`` and backslash escapes."""
    out, i = [], 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "[":
            close = pattern.find("]", i + 1)
            if close == -1:
                out.append(re.escape(ch))
            else:
                out.append("[" + pattern[i + 1:close].replace("\\", "\\\\") + "]")
                i = close + 1
                continue
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out), re.DOTALL)


class FakeRedis:
    """
    Just enough of redis.Redis (decode_responses=True) for RedisStorage.

    Expiry is not time based: tests call ``force_expire(key)`` to simulate a
    TTL running out.  ``ttls`` records the TTL passed to ``set``/``expire``.
    """

    def __init__(self) -> None:
        self.strings: Dict[str, str] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.ttls: Dict[str, Optional[timedelta]] = {}
        self.closed = False

    # -- test helpers --
    def force_expire(self, key: str) -> None:
        self.strings.pop(key, None)
        self.ttls.pop(key, None)

    # -- connection --
    def ping(self) -> bool:
        return True

    def close(self) -> None:
        self.closed = True

    # -- strings --
    def set(self, name: str, value: str, ex=None) -> bool:
        self.strings[name] = value
        self.ttls[name] = ex
        return True

    def get(self, name: str) -> Optional[str]:
        return self.strings.get(name)

    def incr(self, name: str) -> int:
        value = int(self.strings.get(name, "0")) + 1
        self.strings[name] = str(value)
        return value

    def expire(self, name: str, time) -> bool:
        if name not in self.strings and name not in self.zsets:
            return False
        self.ttls[name] = time
        return True

    def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            if name in self.strings:
                del self.strings[name]
                self.ttls.pop(name, None)
                removed += 1
            elif name in self.zsets:
                del self.zsets[name]
                removed += 1
        return removed

    def scan_iter(self, match: str = "*") -> Iterator[str]:
        keys = list(self.strings) + list(self.zsets)
        pattern = _glob_to_regex(match)
        return iter([k for k in keys if pattern.fullmatch(k)])

    # -- sorted sets --
    def _sorted(self, name: str) -> List[str]:
        zset = self.zsets.get(name, {})
        return [m for m, _ in sorted(zset.items(), key=lambda kv: (kv[1], kv[0]))]

    def zadd(self, name: str, mapping: Dict[str, float]) -> int:
        zset = self.zsets.setdefault(name, {})
        added = sum(1 for m in mapping if m not in zset)
        zset.update(mapping)
        return added

    def zrange(self, name: str, start: int, end: int) -> List[str]:
        return _redis_range(self._sorted(name), start, end)

    def zrevrange(self, name: str, start: int, end: int) -> List[str]:
        return _redis_range(list(reversed(self._sorted(name))), start, end)

    def zcard(self, name: str) -> int:
        return len(self.zsets.get(name, {}))

    def zremrangebyrank(self, name: str, min: int, max: int) -> int:
        doomed = _redis_range(self._sorted(name), min, max)
        for member in doomed:
            del self.zsets[name][member]
        return len(doomed)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


# ══════════════════════════════════════════════════════════════════════════════
# Chat model double
# ══════════════════════════════════════════════════════════════════════════════

class ScriptedModel:
    """
    Stands in for ChatModel.  Replies are consumed in order; every call
    records the messages it received.  With ``gate`` set, a call stalls until
    the gate opens (or five seconds pass) before producing anything.
    """

    def __init__(self, replies: Optional[List[str]] = None, error: Optional[Exception] = None) -> None:
        self.replies = list(replies or [])
        self.error = error
        self.calls: List[List[ChatMessage]] = []
        self.stream_closed = False
        self.gate: Optional[threading.Event] = None

    def _wait_for_gate(self) -> None:
        if self.gate is not None:
            self.gate.wait(5)

    def generate(self, messages: List[ChatMessage], timeout: float) -> str:
        self.calls.append(list(messages))
        self._wait_for_gate()
        if self.error is not None:
            raise self.error
        return self.replies.pop(0)

    def stream(self, messages: List[ChatMessage], timeout: float) -> Iterator[str]:
        self.calls.append(list(messages))
        reply = self.replies.pop(0) if self.replies else ""
        try:
            self._wait_for_gate()
            for word in reply.split(" "):
                if self.error is not None:
                    raise self.error
                yield word + " "
        finally:
            self.stream_closed = True


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
def model() -> ScriptedModel:
    return ScriptedModel()
