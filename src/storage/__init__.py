"""Chatbot and conversation persistence backends."""
from .base import Storage
from .factory import new_storage
from .memory_store import MemoryStorage
from .rate_limit import MemoryRateLimiter, RateLimiter
from .redis_store import RedisStorage
from .sql_store import SQLStorage

__all__ = [
    "Storage",
    "new_storage",
    "MemoryStorage",
    "RedisStorage",
    "SQLStorage",
    "RateLimiter",
    "MemoryRateLimiter",
]
