"""
Redis cache storage backend.

Keys
----
chatbot:{id}                     JSON chatbot, expires after 24 hours
conversations:{chatbot_id}       sorted set of conversation ids (score = id),
                                 pruned to the newest 1000 members
conversation:{chatbot_id}:{id}   JSON conversation, expires after 7 days
conversation:id_seq              INCR counter for conversation ids
ratelimit:chat:{chatbot_id}      INCR counter, expires after the rate window

The sorted set and the content blobs expire independently, so a history
read may find an id whose blob is gone (or never sees a blob whose id was
pruned).  Such entries are skipped rather than reported as errors.

A cache is not authoritative for enumeration: ``get_chatbots()`` always
returns an empty list.  Pair this backend with a source of truth when the
full chatbot list is needed.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import List

import redis
from pydantic import ValidationError

from src.core.config import RedisConfig
from src.core.errors import BackendFailure, NotFoundError
from src.core.models import Chatbot, Conversation
from src.utils.logging import get_logger
from .base import Storage
from .rate_limit import RateLimiter

logger = get_logger(__name__)

CHATBOT_TTL = timedelta(hours=24)
CONVERSATION_TTL = timedelta(days=7)
MAX_INDEXED_CONVERSATIONS = 1000
_ID_SEQUENCE_KEY = "conversation:id_seq"
_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def _chatbot_key(chatbot_id: str) -> str:
    return f"chatbot:{chatbot_id}"


def _index_key(chatbot_id: str) -> str:
    return f"conversations:{chatbot_id}"


def _content_key(chatbot_id: str, conv_id) -> str:
    return f"conversation:{chatbot_id}:{conv_id}"


def _escape_glob(value: str) -> str:
    """Backslash-escape the characters Redis MATCH patterns treat specially."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class RedisStorage(Storage, RateLimiter):
    """Cache-oriented storage on top of a redis-py client."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client
        try:
            self._client.ping()
        except redis.RedisError as exc:
            raise BackendFailure(f"ping redis: {exc}") from exc

    @classmethod
    def from_config(cls, cfg: RedisConfig) -> "RedisStorage":
        client = redis.Redis(
            host=cfg.host,
            port=cfg.port,
            password=cfg.password or None,
            db=cfg.db,
            max_connections=10,
            decode_responses=True,
        )
        logger.info("Connecting to Redis at %s:%d/%d", cfg.host, cfg.port, cfg.db)
        return cls(client)

    # ── chatbots ──────────────────────────────────────────────────────────────

    def save_chatbot(self, chatbot: Chatbot) -> None:
        chatbot.updated_at = datetime.now()
        try:
            self._client.set(
                _chatbot_key(chatbot.id), chatbot.model_dump_json(), ex=CHATBOT_TTL
            )
        except redis.RedisError as exc:
            raise BackendFailure(f"save chatbot: {exc}") from exc

    def get_chatbot(self, chatbot_id: str) -> Chatbot:
        try:
            data = self._client.get(_chatbot_key(chatbot_id))
        except redis.RedisError as exc:
            raise BackendFailure(f"get chatbot: {exc}") from exc
        if data is None:
            raise NotFoundError("chatbot", chatbot_id)
        try:
            return Chatbot.model_validate_json(data)
        except ValidationError as exc:
            raise BackendFailure(f"decode chatbot {chatbot_id}: {exc}") from exc

    def get_chatbots(self) -> List[Chatbot]:
        logger.warning(
            "Redis storage cannot enumerate chatbots; returning an empty list. "
            "Use the sqlite backend when the full list is required."
        )
        return []

    def delete_chatbot(self, chatbot_id: str) -> None:
        """Delete the chatbot key, its history index and every content blob."""
        try:
            if self._client.delete(_chatbot_key(chatbot_id)) == 0:
                raise NotFoundError("chatbot", chatbot_id)
            # Ids may contain ":"; only a numeric suffix belongs to this chatbot
            prefix = _content_key(chatbot_id, "")
            pattern = _escape_glob(prefix) + "*"
            blob_keys = [
                key for key in self._client.scan_iter(match=pattern)
                if key[len(prefix):].isdigit()
            ]
            self._client.delete(_index_key(chatbot_id), *blob_keys)
        except redis.RedisError as exc:
            raise BackendFailure(f"delete chatbot: {exc}") from exc
        logger.info("Deleted chatbot %s (%d cached conversations)", chatbot_id, len(blob_keys))

    # ── conversations ─────────────────────────────────────────────────────────

    def save_conversation(self, conv: Conversation) -> Conversation:
        index_key = _index_key(conv.chatbot_id)
        try:
            conv_id = int(self._client.incr(_ID_SEQUENCE_KEY))
            stored = conv.model_copy(update={"id": conv_id, "created_at": datetime.now()})

            self._client.set(
                _content_key(conv.chatbot_id, conv_id),
                stored.model_dump_json(),
                ex=CONVERSATION_TTL,
            )
            self._client.zadd(index_key, {str(conv_id): conv_id})
            # Keep only the newest MAX_INDEXED_CONVERSATIONS ids
            self._client.zremrangebyrank(index_key, 0, -(MAX_INDEXED_CONVERSATIONS + 1))
        except redis.RedisError as exc:
            raise BackendFailure(f"save conversation: {exc}") from exc
        return stored

    def get_conversation_history(self, chatbot_id: str, limit: int) -> List[Conversation]:
        if limit <= 0:
            return []
        try:
            members = self._client.zrevrange(_index_key(chatbot_id), 0, limit - 1)
        except redis.RedisError as exc:
            raise BackendFailure(f"get conversation history: {exc}") from exc

        conversations: List[Conversation] = []
        for member in members:
            try:
                data = self._client.get(_content_key(chatbot_id, member))
            except redis.RedisError as exc:
                raise BackendFailure(f"get conversation {member}: {exc}") from exc
            if data is None:
                logger.debug("Conversation %s:%s expired; skipping", chatbot_id, member)
                continue
            try:
                conversations.append(Conversation.model_validate_json(data))
            except ValidationError:
                logger.warning("Conversation %s:%s is not decodable; skipping", chatbot_id, member)

        # Newest first from the index; flip to chronological order
        conversations.reverse()
        return conversations

    # ── rate limiting ─────────────────────────────────────────────────────────

    def rate_limit(self, key: str, limit: int, window: timedelta) -> bool:
        """INCR *key*; the first hit of a window sets its expiry."""
        try:
            count = int(self._client.incr(key))
            if count == 1:
                self._client.expire(key, window)
        except redis.RedisError as exc:
            raise BackendFailure(f"incr rate limit: {exc}") from exc
        return count <= limit

    def close(self) -> None:
        try:
            self._client.close()
        except redis.RedisError as exc:
            raise BackendFailure(f"close redis: {exc}") from exc
