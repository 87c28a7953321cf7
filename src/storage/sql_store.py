"""
SQLite-backed relational storage.

Schema
------
chatbots      : id TEXT PK, name, personality, background, system_prompt,
                created_at TEXT, updated_at TEXT
conversations : id INTEGER PK AUTOINCREMENT, chatbot_id TEXT, user_message,
                bot_message, created_at TEXT

Usage
-----
    store = SQLStorage("data/chatbots.db")
    store.save_chatbot(chatbot)
    turns = store.get_conversation_history(chatbot.id, limit=20)
"""
from __future__ import annotations

import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Union

from src.core.errors import BackendFailure, NotFoundError
from src.core.models import Chatbot, Conversation
from src.utils.logging import get_logger
from .base import Storage

logger = get_logger(__name__)

_DEFAULT_DB = Path(__file__).resolve().parents[2] / "data" / "chatbots.db"

_CHATBOT_COLUMNS = "id, name, personality, background, system_prompt, created_at, updated_at"
_CONVERSATION_COLUMNS = "id, chatbot_id, user_message, bot_message, created_at"


class SQLStorage(Storage):
    """Thread-safe SQLite storage; each call uses its own short-lived connection."""

    def __init__(self, db_path: Union[str, Path, None] = None) -> None:
        self.db_path = Path(db_path or _DEFAULT_DB)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()
        logger.info("SQLite storage ready at %s", self.db_path)

    # ── schema ────────────────────────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")  # safe for concurrent reads
        return conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, and wrap driver errors."""
        try:
            with closing(self._connect()) as conn:
                with conn:
                    yield conn
        except sqlite3.Error as exc:
            raise BackendFailure(f"{operation}: {exc}") from exc

    def _init_schema(self) -> None:
        with self._transaction("init schema") as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS chatbots (
                    id              TEXT PRIMARY KEY,
                    name            TEXT NOT NULL,
                    personality     TEXT NOT NULL DEFAULT '',
                    background      TEXT NOT NULL DEFAULT '',
                    system_prompt   TEXT NOT NULL DEFAULT '',
                    created_at      TEXT NOT NULL,
                    updated_at      TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS conversations (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    chatbot_id      TEXT    NOT NULL,
                    user_message    TEXT    NOT NULL,
                    bot_message     TEXT    NOT NULL,
                    created_at      TEXT    NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_conversations_chatbot
                    ON conversations(chatbot_id, created_at);
            """)

    # ── row mapping ───────────────────────────────────────────────────────────

    @staticmethod
    def _to_chatbot(row: sqlite3.Row) -> Chatbot:
        return Chatbot(
            id=row["id"],
            name=row["name"],
            personality=row["personality"],
            background=row["background"],
            system_prompt=row["system_prompt"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            chatbot_id=row["chatbot_id"],
            user_message=row["user_message"],
            bot_message=row["bot_message"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ── chatbots ──────────────────────────────────────────────────────────────

    def save_chatbot(self, chatbot: Chatbot) -> None:
        """Upsert by id.  ``created_at`` of an existing row is left untouched."""
        chatbot.updated_at = datetime.now()
        with self._transaction("save chatbot") as conn:
            conn.execute(
                f"""
                INSERT INTO chatbots ({_CHATBOT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name          = excluded.name,
                    personality   = excluded.personality,
                    background    = excluded.background,
                    system_prompt = excluded.system_prompt,
                    updated_at    = excluded.updated_at
                """,
                (
                    chatbot.id,
                    chatbot.name,
                    chatbot.personality,
                    chatbot.background,
                    chatbot.system_prompt,
                    chatbot.created_at.isoformat(),
                    chatbot.updated_at.isoformat(),
                ),
            )

    def get_chatbot(self, chatbot_id: str) -> Chatbot:
        with self._transaction("get chatbot") as conn:
            row = conn.execute(
                f"SELECT {_CHATBOT_COLUMNS} FROM chatbots WHERE id = ?",
                (chatbot_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError("chatbot", chatbot_id)
        return self._to_chatbot(row)

    def get_chatbots(self) -> List[Chatbot]:
        """Return all chatbots, most recently created first."""
        with self._transaction("get chatbots") as conn:
            rows = conn.execute(
                f"SELECT {_CHATBOT_COLUMNS} FROM chatbots ORDER BY created_at DESC"
            ).fetchall()
        return [self._to_chatbot(r) for r in rows]

    def delete_chatbot(self, chatbot_id: str) -> None:
        """Delete the chatbot and its conversations in a single transaction."""
        deleted_convs: Optional[int] = None
        with self._transaction("delete chatbot") as conn:
            cur = conn.execute("DELETE FROM chatbots WHERE id = ?", (chatbot_id,))
            if cur.rowcount == 0:
                raise NotFoundError("chatbot", chatbot_id)
            cur = conn.execute(
                "DELETE FROM conversations WHERE chatbot_id = ?", (chatbot_id,)
            )
            deleted_convs = cur.rowcount
        logger.info("Deleted chatbot %s (%s conversations)", chatbot_id, deleted_convs)

    # ── conversations ─────────────────────────────────────────────────────────

    def save_conversation(self, conv: Conversation) -> Conversation:
        created_at = datetime.now()
        with self._transaction("save conversation") as conn:
            cur = conn.execute(
                "INSERT INTO conversations (chatbot_id, user_message, bot_message, created_at) "
                "VALUES (?, ?, ?, ?)",
                (conv.chatbot_id, conv.user_message, conv.bot_message, created_at.isoformat()),
            )
            conv_id = cur.lastrowid
        return conv.model_copy(update={"id": conv_id, "created_at": created_at})

    def get_conversation_history(self, chatbot_id: str, limit: int) -> List[Conversation]:
        if limit <= 0:
            return []
        with self._transaction("get conversation history") as conn:
            rows = conn.execute(
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversations
                WHERE chatbot_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (chatbot_id, limit),
            ).fetchall()
        # Reverse so oldest first (chronological order for LLM context)
        return [self._to_conversation(r) for r in reversed(rows)]

    def close(self) -> None:
        """Connections are per-call; nothing stays open between calls."""
        logger.debug("SQLite storage closed (%s)", self.db_path)
