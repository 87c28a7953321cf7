"""
Fixed-window rate limiting.

A limiter counts hits per key inside a window that starts at the first hit;
``rate_limit`` returns False once the count passes the limit and the key is
reset when the window ends.  ``RedisStorage`` implements the same interface
on Redis counters so the limit is shared between server processes.
"""
from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, Tuple

from src.utils.logging import get_logger

logger = get_logger(__name__)


class RateLimiter(ABC):

    @abstractmethod
    def rate_limit(self, key: str, limit: int, window: timedelta) -> bool:
        """Record a hit on *key*; True while at most *limit* hits fall in the window."""


class MemoryRateLimiter(RateLimiter):
    """Per-process counters; windows are measured on the monotonic clock."""

    def __init__(self) -> None:
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def rate_limit(self, key: str, limit: int, window: timedelta) -> bool:
        now = time.monotonic()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= window.total_seconds():
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
        if count > limit:
            logger.debug("Rate limit hit for %s (%d > %d)", key, count, limit)
        return count <= limit
