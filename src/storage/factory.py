"""Configuration-driven construction of the storage backend."""
from __future__ import annotations

from src.core.config import StorageConfig
from src.utils.logging import get_logger
from .base import Storage
from .memory_store import MemoryStorage
from .redis_store import RedisStorage
from .sql_store import SQLStorage

logger = get_logger(__name__)

STORAGE_TYPES = ("memory", "sqlite", "redis")


def new_storage(cfg: StorageConfig) -> Storage:
    """
    Build the backend named by ``cfg.type``.

    Unknown types fall back to the in-memory backend.  Called once at
    startup; the returned instance is shared by every request.
    """
    storage_type = (cfg.type or "memory").strip().lower()

    if storage_type == "sqlite":
        storage: Storage = SQLStorage(cfg.sqlite.path)
    elif storage_type == "redis":
        storage = RedisStorage.from_config(cfg.redis)
    else:
        if storage_type != "memory":
            logger.warning(
                "Unknown storage type '%s' (expected one of %s); using memory",
                cfg.type, ", ".join(STORAGE_TYPES),
            )
        storage = MemoryStorage()

    logger.info("Storage backend: %s", storage)
    return storage
