"""
In-process storage backend.

Chatbots live in a dict keyed by id and conversations in a per-chatbot
append-only list.  A single reader/writer lock guards both: saves and deletes
are exclusive, reads share the lock.  Every read hands out deep copies so a
caller can never mutate (or observe mutation of) the stored records.

Data is lost when the process exits.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List

from src.core.errors import NotFoundError
from src.core.models import Chatbot, Conversation
from src.utils.logging import get_logger
from .base import Storage

logger = get_logger(__name__)


class _RWLock:
    """Many readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class MemoryStorage(Storage):
    """Thread-safe dict-backed storage."""

    def __init__(self) -> None:
        self._chatbots: Dict[str, Chatbot] = {}
        self._conversations: Dict[str, List[Conversation]] = {}
        self._next_conv_id = 1
        self._lock = _RWLock()

    # ── chatbots ──────────────────────────────────────────────────────────────

    def save_chatbot(self, chatbot: Chatbot) -> None:
        with self._lock.write():
            chatbot.updated_at = datetime.now()
            self._chatbots[chatbot.id] = chatbot.model_copy(deep=True)

    def get_chatbot(self, chatbot_id: str) -> Chatbot:
        with self._lock.read():
            chatbot = self._chatbots.get(chatbot_id)
            if chatbot is None:
                raise NotFoundError("chatbot", chatbot_id)
            return chatbot.model_copy(deep=True)

    def get_chatbots(self) -> List[Chatbot]:
        with self._lock.read():
            return [cb.model_copy(deep=True) for cb in self._chatbots.values()]

    def delete_chatbot(self, chatbot_id: str) -> None:
        with self._lock.write():
            if chatbot_id not in self._chatbots:
                raise NotFoundError("chatbot", chatbot_id)
            del self._chatbots[chatbot_id]
            dropped = self._conversations.pop(chatbot_id, [])
        logger.info("Deleted chatbot %s (%d conversations)", chatbot_id, len(dropped))

    # ── conversations ─────────────────────────────────────────────────────────

    def save_conversation(self, conv: Conversation) -> Conversation:
        with self._lock.write():
            stored = conv.model_copy(
                update={"id": self._next_conv_id, "created_at": datetime.now()},
                deep=True,
            )
            self._next_conv_id += 1
            self._conversations.setdefault(stored.chatbot_id, []).append(stored)
            return stored.model_copy(deep=True)

    def get_conversation_history(self, chatbot_id: str, limit: int) -> List[Conversation]:
        if limit <= 0:
            return []
        with self._lock.read():
            convs = self._conversations.get(chatbot_id, [])
            return [c.model_copy(deep=True) for c in convs[-limit:]]

    def close(self) -> None:
        """Nothing to release."""
