"""Unit tests for src/storage: memory, sqlite and redis backends plus the factory"""
from __future__ import annotations

import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
import redis

from src.core.config import StorageConfig
from src.core.errors import BackendFailure, NotFoundError
from src.core.models import Chatbot, Conversation
from src.storage import MemoryRateLimiter, MemoryStorage, RedisStorage, SQLStorage, new_storage
from src.storage import rate_limit as rate_limit_module
from src.storage import redis_store


def make_chatbot(chatbot_id: str = "bot-1", name: str = "Lin", **kwargs) -> Chatbot:
    return Chatbot(id=chatbot_id, name=name, system_prompt="prompt", **kwargs)


def make_conv(chatbot_id: str = "bot-1", user: str = "hi", bot: str = "hello") -> Conversation:
    return Conversation(chatbot_id=chatbot_id, user_message=user, bot_message=bot)


# ══════════════════════════════════════════════════════════════════════════════
# Behaviour shared by every backend
# ══════════════════════════════════════════════════════════════════════════════

@pytest.fixture(params=["memory", "sqlite", "redis"])
def store(request, tmp_path, fake_redis):
    if request.param == "memory":
        backend = MemoryStorage()
    elif request.param == "sqlite":
        backend = SQLStorage(tmp_path / "chatbots.db")
    else:
        backend = RedisStorage(fake_redis)
    yield backend
    backend.close()


class TestChatbotRecords:

    def test_round_trip(self, store):
        store.save_chatbot(make_chatbot(personality="kind", background="librarian"))
        got = store.get_chatbot("bot-1")
        assert got.name == "Lin"
        assert got.personality == "kind"
        assert got.background == "librarian"
        assert got.system_prompt == "prompt"

    def test_save_refreshes_updated_at(self, store):
        bot = make_chatbot()
        bot.updated_at = datetime(2000, 1, 1)
        store.save_chatbot(bot)
        assert store.get_chatbot("bot-1").updated_at > datetime(2000, 1, 1)

    def test_missing_chatbot_raises_not_found(self, store):
        with pytest.raises(NotFoundError) as excinfo:
            store.get_chatbot("nope")
        assert excinfo.value.kind == "chatbot"
        assert excinfo.value.key == "nope"

    def test_save_same_id_replaces(self, store):
        store.save_chatbot(make_chatbot(name="Lin"))
        store.save_chatbot(make_chatbot(name="Mei"))
        assert store.get_chatbot("bot-1").name == "Mei"

    def test_returned_record_is_a_snapshot(self, store):
        store.save_chatbot(make_chatbot())
        got = store.get_chatbot("bot-1")
        got.name = "mutated"
        assert store.get_chatbot("bot-1").name == "Lin"

    def test_delete_twice_raises_not_found(self, store):
        store.save_chatbot(make_chatbot())
        store.delete_chatbot("bot-1")
        with pytest.raises(NotFoundError):
            store.delete_chatbot("bot-1")
        with pytest.raises(NotFoundError):
            store.get_chatbot("bot-1")

    def test_delete_unknown_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.delete_chatbot("ghost")


class TestConversationRecords:

    def test_assigns_increasing_ids(self, store):
        first = store.save_conversation(make_conv(user="a"))
        second = store.save_conversation(make_conv(user="b"))
        assert first.id > 0
        assert second.id > first.id

    def test_caller_id_is_ignored(self, store):
        conv = make_conv()
        conv.id = 999
        saved = store.save_conversation(conv)
        assert saved.id == 1

    def test_history_is_chronological_and_limited(self, store):
        for i in range(5):
            store.save_conversation(make_conv(user=f"q{i}", bot=f"a{i}"))
        history = store.get_conversation_history("bot-1", 3)
        assert [c.user_message for c in history] == ["q2", "q3", "q4"]
        assert [c.bot_message for c in history] == ["a2", "a3", "a4"]

    def test_history_limit_larger_than_count(self, store):
        store.save_conversation(make_conv(user="only"))
        history = store.get_conversation_history("bot-1", 20)
        assert [c.user_message for c in history] == ["only"]

    def test_empty_history(self, store):
        assert store.get_conversation_history("bot-1", 10) == []

    def test_non_positive_limit_returns_empty(self, store):
        store.save_conversation(make_conv())
        assert store.get_conversation_history("bot-1", 0) == []
        assert store.get_conversation_history("bot-1", -1) == []

    def test_history_is_per_chatbot(self, store):
        store.save_conversation(make_conv(chatbot_id="bot-1", user="mine"))
        store.save_conversation(make_conv(chatbot_id="bot-2", user="theirs"))
        history = store.get_conversation_history("bot-1", 10)
        assert [c.user_message for c in history] == ["mine"]

    def test_delete_cascades_to_conversations(self, store):
        store.save_chatbot(make_chatbot())
        store.save_conversation(make_conv())
        store.save_conversation(make_conv())
        store.delete_chatbot("bot-1")
        assert store.get_conversation_history("bot-1", 10) == []


# ══════════════════════════════════════════════════════════════════════════════
# MemoryStorage
# ══════════════════════════════════════════════════════════════════════════════

class TestMemoryStorage:

    def test_lists_all_chatbots(self):
        store = MemoryStorage()
        store.save_chatbot(make_chatbot("a"))
        store.save_chatbot(make_chatbot("b"))
        assert sorted(cb.id for cb in store.get_chatbots()) == ["a", "b"]

    def test_first_conversation_id_is_one(self):
        store = MemoryStorage()
        assert store.save_conversation(make_conv()).id == 1

    def test_stored_chatbot_detached_from_caller(self):
        store = MemoryStorage()
        bot = make_chatbot()
        store.save_chatbot(bot)
        bot.name = "changed after save"
        assert store.get_chatbot("bot-1").name == "Lin"

    def test_history_entries_are_copies(self):
        store = MemoryStorage()
        store.save_conversation(make_conv(user="original"))
        store.get_conversation_history("bot-1", 1)[0].user_message = "edited"
        assert store.get_conversation_history("bot-1", 1)[0].user_message == "original"

    def test_concurrent_saves_get_distinct_ids(self):
        store = MemoryStorage()
        ids = []
        ids_lock = threading.Lock()

        def worker(n: int) -> None:
            for i in range(25):
                saved = store.save_conversation(make_conv(user=f"{n}-{i}"))
                with ids_lock:
                    ids.append(saved.id)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(ids) == 200
        assert len(set(ids)) == 200
        history = store.get_conversation_history("bot-1", 200)
        assert [c.id for c in history] == sorted(ids)

    def test_concurrent_readers_and_writers(self):
        store = MemoryStorage()
        store.save_chatbot(make_chatbot())
        errors = []

        def reader() -> None:
            try:
                for _ in range(100):
                    store.get_chatbot("bot-1")
                    store.get_conversation_history("bot-1", 5)
            except Exception as exc:
                errors.append(exc)

        def writer() -> None:
            for i in range(100):
                store.save_conversation(make_conv(user=str(i)))

        threads = [threading.Thread(target=reader) for _ in range(4)]
        threads.append(threading.Thread(target=writer))
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(store.get_conversation_history("bot-1", 1000)) == 100


# ══════════════════════════════════════════════════════════════════════════════
# SQLStorage
# ══════════════════════════════════════════════════════════════════════════════

class TestSQLStorage:

    def test_creates_db_file_and_parent_dirs(self, tmp_path):
        db = tmp_path / "nested" / "dir" / "chatbots.db"
        SQLStorage(db)
        assert db.exists()

    def test_data_survives_reopen(self, tmp_path):
        db = tmp_path / "chatbots.db"
        SQLStorage(db).save_chatbot(make_chatbot())
        SQLStorage(db).save_conversation(make_conv())
        reopened = SQLStorage(db)
        assert reopened.get_chatbot("bot-1").name == "Lin"
        assert len(reopened.get_conversation_history("bot-1", 5)) == 1

    def test_upsert_keeps_created_at(self, tmp_path):
        store = SQLStorage(tmp_path / "chatbots.db")
        original = make_chatbot(created_at=datetime(2024, 1, 1, 9, 0))
        store.save_chatbot(original)

        replacement = make_chatbot(name="Mei", created_at=datetime(2025, 6, 1, 9, 0))
        store.save_chatbot(replacement)

        got = store.get_chatbot("bot-1")
        assert got.name == "Mei"
        assert got.created_at == datetime(2024, 1, 1, 9, 0)

    def test_get_chatbots_newest_first(self, tmp_path):
        store = SQLStorage(tmp_path / "chatbots.db")
        base = datetime(2024, 1, 1)
        store.save_chatbot(make_chatbot("old", created_at=base))
        store.save_chatbot(make_chatbot("new", created_at=base + timedelta(days=2)))
        store.save_chatbot(make_chatbot("mid", created_at=base + timedelta(days=1)))
        assert [cb.id for cb in store.get_chatbots()] == ["new", "mid", "old"]

    def test_get_chatbots_empty(self, tmp_path):
        assert SQLStorage(tmp_path / "chatbots.db").get_chatbots() == []

    def test_save_conversation_sets_created_at(self, tmp_path):
        store = SQLStorage(tmp_path / "chatbots.db")
        before = datetime.now()
        saved = store.save_conversation(make_conv())
        assert saved.created_at >= before

    def test_driver_error_is_wrapped(self, tmp_path):
        store = SQLStorage(tmp_path / "chatbots.db")
        store.db_path = tmp_path  # a directory cannot be opened as a database
        with pytest.raises(BackendFailure):
            store.get_chatbot("bot-1")

    def test_usable_as_context_manager(self, tmp_path):
        with SQLStorage(tmp_path / "chatbots.db") as store:
            store.save_chatbot(make_chatbot())
        assert store.get_chatbot("bot-1").id == "bot-1"


# ══════════════════════════════════════════════════════════════════════════════
# RedisStorage
# ══════════════════════════════════════════════════════════════════════════════

class TestRedisStorage:

    def test_ping_failure_raises_backend_failure(self, fake_redis):
        fake_redis.ping = MagicMock(side_effect=redis.ConnectionError("refused"))
        with pytest.raises(BackendFailure):
            RedisStorage(fake_redis)

    def test_keys_and_ttls(self, fake_redis):
        store = RedisStorage(fake_redis)
        store.save_chatbot(make_chatbot())
        saved = store.save_conversation(make_conv())

        assert fake_redis.ttls["chatbot:bot-1"] == redis_store.CHATBOT_TTL
        content_key = f"conversation:bot-1:{saved.id}"
        assert fake_redis.ttls[content_key] == redis_store.CONVERSATION_TTL
        assert fake_redis.zrange("conversations:bot-1", 0, -1) == [str(saved.id)]

    def test_get_chatbots_is_always_empty(self, fake_redis):
        store = RedisStorage(fake_redis)
        store.save_chatbot(make_chatbot())
        assert store.get_chatbots() == []

    def test_expired_chatbot_is_not_found(self, fake_redis):
        store = RedisStorage(fake_redis)
        store.save_chatbot(make_chatbot())
        fake_redis.force_expire("chatbot:bot-1")
        with pytest.raises(NotFoundError):
            store.get_chatbot("bot-1")

    def test_expired_conversation_is_skipped(self, fake_redis):
        store = RedisStorage(fake_redis)
        first = store.save_conversation(make_conv(user="q1"))
        store.save_conversation(make_conv(user="q2"))
        store.save_conversation(make_conv(user="q3"))
        fake_redis.force_expire(f"conversation:bot-1:{first.id}")

        history = store.get_conversation_history("bot-1", 10)
        assert [c.user_message for c in history] == ["q2", "q3"]

    def test_undecodable_conversation_is_skipped(self, fake_redis):
        store = RedisStorage(fake_redis)
        first = store.save_conversation(make_conv(user="q1"))
        store.save_conversation(make_conv(user="q2"))
        fake_redis.strings[f"conversation:bot-1:{first.id}"] = "{not json"

        history = store.get_conversation_history("bot-1", 10)
        assert [c.user_message for c in history] == ["q2"]

    def test_corrupt_chatbot_raises_backend_failure(self, fake_redis):
        store = RedisStorage(fake_redis)
        fake_redis.strings["chatbot:bot-1"] = "{not json"
        with pytest.raises(BackendFailure):
            store.get_chatbot("bot-1")

    def test_index_is_pruned(self, fake_redis, monkeypatch):
        monkeypatch.setattr(redis_store, "MAX_INDEXED_CONVERSATIONS", 3)
        store = RedisStorage(fake_redis)
        saved = [store.save_conversation(make_conv(user=f"q{i}")) for i in range(5)]

        members = fake_redis.zrange("conversations:bot-1", 0, -1)
        assert members == [str(c.id) for c in saved[-3:]]
        history = store.get_conversation_history("bot-1", 10)
        assert [c.user_message for c in history] == ["q2", "q3", "q4"]

    def test_ids_are_ordered_numerically(self, fake_redis):
        store = RedisStorage(fake_redis)
        for i in range(12):
            store.save_conversation(make_conv(user=f"q{i}"))
        history = store.get_conversation_history("bot-1", 3)
        assert [c.user_message for c in history] == ["q9", "q10", "q11"]

    def test_delete_removes_every_key(self, fake_redis):
        store = RedisStorage(fake_redis)
        store.save_chatbot(make_chatbot())
        store.save_conversation(make_conv())
        store.save_conversation(make_conv(chatbot_id="bot-2"))
        store.delete_chatbot("bot-1")

        remaining = set(fake_redis.strings) | set(fake_redis.zsets)
        assert not any("bot-1" in key for key in remaining)
        assert "conversations:bot-2" in remaining

    def test_delete_keeps_history_of_id_sharing_prefix(self, fake_redis):
        store = RedisStorage(fake_redis)
        store.save_chatbot(make_chatbot("bot"))
        store.save_chatbot(make_chatbot("bot:x"))
        store.save_conversation(make_conv(chatbot_id="bot", user="mine"))
        kept = store.save_conversation(make_conv(chatbot_id="bot:x", user="sibling"))

        store.delete_chatbot("bot")

        assert f"conversation:bot:x:{kept.id}" in fake_redis.strings
        history = store.get_conversation_history("bot:x", 10)
        assert [c.user_message for c in history] == ["sibling"]

    def test_delete_id_with_glob_characters(self, fake_redis):
        store = RedisStorage(fake_redis)
        store.save_chatbot(make_chatbot("b*"))
        store.save_conversation(make_conv(chatbot_id="b*"))
        kept = store.save_conversation(make_conv(chatbot_id="bob"))

        store.delete_chatbot("b*")

        assert not any(key.startswith("conversation:b*:") for key in fake_redis.strings)
        assert f"conversation:bob:{kept.id}" in fake_redis.strings

    def test_rate_limit_counts_within_window(self, fake_redis):
        store = RedisStorage(fake_redis)
        window = timedelta(seconds=60)

        assert store.rate_limit("ratelimit:chat:bot-1", 2, window) is True
        assert fake_redis.ttls["ratelimit:chat:bot-1"] == window
        assert store.rate_limit("ratelimit:chat:bot-1", 2, window) is True
        assert store.rate_limit("ratelimit:chat:bot-1", 2, window) is False
        # other keys have their own counter
        assert store.rate_limit("ratelimit:chat:bot-2", 2, window) is True

    def test_rate_limit_resets_when_key_expires(self, fake_redis):
        store = RedisStorage(fake_redis)
        window = timedelta(seconds=60)
        store.rate_limit("ratelimit:chat:bot-1", 1, window)
        assert store.rate_limit("ratelimit:chat:bot-1", 1, window) is False

        fake_redis.force_expire("ratelimit:chat:bot-1")
        assert store.rate_limit("ratelimit:chat:bot-1", 1, window) is True

    def test_rate_limit_error_raises_backend_failure(self, fake_redis):
        store = RedisStorage(fake_redis)
        fake_redis.incr = MagicMock(side_effect=redis.ConnectionError("down"))
        with pytest.raises(BackendFailure):
            store.rate_limit("ratelimit:chat:bot-1", 1, timedelta(seconds=60))

    def test_command_error_raises_backend_failure(self, fake_redis):
        store = RedisStorage(fake_redis)
        fake_redis.get = MagicMock(side_effect=redis.ConnectionError("down"))
        with pytest.raises(BackendFailure):
            store.get_chatbot("bot-1")

    def test_close_closes_client(self, fake_redis):
        RedisStorage(fake_redis).close()
        assert fake_redis.closed


# ══════════════════════════════════════════════════════════════════════════════
# MemoryRateLimiter
# ══════════════════════════════════════════════════════════════════════════════

class StepClock:
    """Stands in for the ``time`` module in rate_limit; tests move ``now``."""

    def __init__(self) -> None:
        self.now = 100.0

    def monotonic(self) -> float:
        return self.now


class TestMemoryRateLimiter:

    def test_allows_up_to_limit(self):
        limiter = MemoryRateLimiter()
        window = timedelta(seconds=60)
        results = [limiter.rate_limit("k", 3, window) for _ in range(4)]
        assert results == [True, True, True, False]

    def test_keys_are_independent(self):
        limiter = MemoryRateLimiter()
        window = timedelta(seconds=60)
        assert limiter.rate_limit("a", 1, window) is True
        assert limiter.rate_limit("a", 1, window) is False
        assert limiter.rate_limit("b", 1, window) is True

    def test_window_resets(self, monkeypatch):
        clock = StepClock()
        monkeypatch.setattr(rate_limit_module, "time", clock)
        limiter = MemoryRateLimiter()
        window = timedelta(seconds=10)

        assert limiter.rate_limit("k", 1, window) is True
        clock.now += 9
        assert limiter.rate_limit("k", 1, window) is False
        clock.now += 1
        assert limiter.rate_limit("k", 1, window) is True


# ══════════════════════════════════════════════════════════════════════════════
# new_storage
# ══════════════════════════════════════════════════════════════════════════════

class TestNewStorage:

    def test_memory(self):
        assert isinstance(new_storage(StorageConfig(type="memory")), MemoryStorage)

    def test_sqlite(self, tmp_path):
        cfg = StorageConfig(type="sqlite")
        cfg.sqlite.path = str(tmp_path / "db" / "chatbots.db")
        store = new_storage(cfg)
        assert isinstance(store, SQLStorage)
        assert (tmp_path / "db" / "chatbots.db").exists()

    def test_redis_uses_config(self, fake_redis, monkeypatch):
        captured = {}

        def fake_client(**kwargs):
            captured.update(kwargs)
            return fake_redis

        monkeypatch.setattr(redis_store.redis, "Redis", fake_client)
        cfg = StorageConfig(type="redis")
        cfg.redis.host = "cache.local"
        cfg.redis.port = 6380
        store = new_storage(cfg)

        assert isinstance(store, RedisStorage)
        assert captured["host"] == "cache.local"
        assert captured["port"] == 6380
        assert captured["password"] is None
        assert captured["decode_responses"] is True

    def test_unknown_type_falls_back_to_memory(self):
        assert isinstance(new_storage(StorageConfig(type="cassandra")), MemoryStorage)

    def test_type_is_case_insensitive(self):
        assert isinstance(new_storage(StorageConfig(type=" Memory ")), MemoryStorage)
