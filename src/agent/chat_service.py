"""
Chat Service

Runs chatbot conversation turns and the chatbot management lifecycle.

A turn goes through these stages; a failure at any stage aborts the turn
and nothing is written to history:

    loaded     chatbot definition + last ``agent.max_history`` turns
    composed   system prompt, history, new user message (+ RAG knowledge)
    generated  one model call bounded by ``model.timeout``
    persisted  a single Conversation record
    done       reply returned (or streamed) to the caller

The service holds no per-request state, so one instance serves all requests.
Concurrent turns on the same chatbot may be persisted in either order.
"""

from __future__ import annotations

import queue
import threading
import time
import uuid
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from src.core.config import Config
from src.core.errors import (
    ModelFailure,
    RAGUnavailable,
    RateLimited,
    RequestCancelled,
    ValidationFailure,
)
from src.core.models import (
    ChatMessage,
    Chatbot,
    ChatResponse,
    Conversation,
    CreateChatbotRequest,
    UpdateChatbotRequest,
)
from src.rag.service import RAGService
from src.storage.base import Storage
from src.storage.rate_limit import RateLimiter
from src.utils.logging import get_logger
from src.utils.tracing import traceable
from .llm import ChatModel
from .prompts import build_messages, build_system_prompt

logger = get_logger(__name__)

ChunkSink = Callable[[str], None]

# How often a waiting turn looks at its cancel event (seconds)
CANCEL_POLL_INTERVAL = 0.05


class ChatService:
    """Chatbot CRUD plus blocking and streaming chat turns."""

    def __init__(
        self,
        config: Config,
        storage: Storage,
        model: ChatModel,
        rag: Optional[RAGService] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.model = model
        self.rag = rag
        self.rate_limiter = rate_limiter

    def set_rag_service(self, rag: RAGService) -> None:
        self.rag = rag
        logger.info("RAG service attached to chat service")

    # ── chatbot lifecycle ─────────────────────────────────────────────────────

    def create_chatbot(self, req: CreateChatbotRequest) -> Chatbot:
        """Create and persist a chatbot; its system prompt is fixed here."""
        now = datetime.now()
        chatbot = Chatbot(
            id=str(uuid.uuid4()),
            name=req.name,
            personality=req.personality,
            background=req.background,
            system_prompt=build_system_prompt(req.personality, req.background),
            created_at=now,
            updated_at=now,
        )
        self.storage.save_chatbot(chatbot)
        logger.info("Created chatbot %s (%s)", chatbot.id, chatbot.name)
        return chatbot

    def update_chatbot(self, chatbot_id: str, req: UpdateChatbotRequest) -> Chatbot:
        """
        Apply the non-null fields of *req*.

        The system prompt is derived again only when personality or
        background actually change.
        """
        chatbot = self.storage.get_chatbot(chatbot_id)

        if req.name is not None:
            if not req.name.strip():
                raise ValidationFailure("name must not be blank")
            chatbot.name = req.name.strip()

        persona_changed = False
        if req.personality is not None and req.personality != chatbot.personality:
            chatbot.personality = req.personality
            persona_changed = True
        if req.background is not None and req.background != chatbot.background:
            chatbot.background = req.background
            persona_changed = True
        if persona_changed:
            chatbot.system_prompt = build_system_prompt(chatbot.personality, chatbot.background)

        self.storage.save_chatbot(chatbot)
        logger.info("Updated chatbot %s (persona_changed=%s)", chatbot_id, persona_changed)
        return chatbot

    def get_chatbot(self, chatbot_id: str) -> Chatbot:
        return self.storage.get_chatbot(chatbot_id)

    def get_chatbots(self) -> List[Chatbot]:
        return self.storage.get_chatbots()

    def delete_chatbot(self, chatbot_id: str) -> None:
        self.storage.delete_chatbot(chatbot_id)

    def get_conversation_history(self, chatbot_id: str, limit: int) -> List[Conversation]:
        return self.storage.get_conversation_history(chatbot_id, limit)

    # ── knowledge base ────────────────────────────────────────────────────────

    def _require_rag(self) -> RAGService:
        if self.rag is None:
            raise RAGUnavailable("knowledge base is not enabled")
        return self.rag

    def add_knowledge(self, content: str) -> None:
        if not content or not content.strip():
            raise ValidationFailure("content must be a non-empty string")
        self._require_rag().add_knowledge(content.strip())

    def search_knowledge(self, query: str, top_k: int = 3) -> List[str]:
        if not query or not query.strip():
            raise ValidationFailure("query must be a non-empty string")
        return self._require_rag().search_knowledge(query.strip(), top_k)

    # ── chat turns ────────────────────────────────────────────────────────────

    def _compose(self, chatbot_id: str, user_message: str) -> List[ChatMessage]:
        """Load the chatbot and its recent history and build the model input."""
        if not user_message or not user_message.strip():
            raise ValidationFailure("message must be a non-empty string")

        chatbot = self.storage.get_chatbot(chatbot_id)
        history = self.storage.get_conversation_history(chatbot_id, self.config.agent.max_history)

        messages = build_messages(chatbot.system_prompt, history, user_message)
        if self.rag is not None:
            messages = self.rag.enhance_messages(user_message, messages)

        logger.info(
            "Chatbot %s: %d history turn(s), %d message(s) to model",
            chatbot_id, len(history), len(messages),
        )
        return messages

    def _persist(self, chatbot_id: str, user_message: str, bot_message: str) -> Conversation:
        return self.storage.save_conversation(
            Conversation(chatbot_id=chatbot_id, user_message=user_message, bot_message=bot_message)
        )

    def _check_cancelled(self, chatbot_id: str, cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise RequestCancelled(f"chat with {chatbot_id} cancelled by caller")

    def _check_rate(self, chatbot_id: str) -> None:
        limit = self.config.agent.rate_limit
        if self.rate_limiter is None or limit <= 0:
            return
        key = f"ratelimit:chat:{chatbot_id}"
        if not self.rate_limiter.rate_limit(key, limit, self.config.agent.rate_window_delta()):
            raise RateLimited(
                f"chatbot {chatbot_id} exceeded {limit} turn(s) per {self.config.agent.rate_window}s"
            )

    def _generate(
        self,
        chatbot_id: str,
        messages: List[ChatMessage],
        timeout: float,
        cancel: Optional[threading.Event],
    ) -> str:
        """
        Call the model, returning early with ``RequestCancelled`` once *cancel* is set.

        With a cancel event the call runs on a daemon worker; an abandoned
        call finishes (or times out) on its own and its reply is discarded.
        """
        if cancel is None:
            return self.model.generate(messages, timeout=timeout)

        outcome: dict = {}
        finished = threading.Event()

        def worker() -> None:
            try:
                outcome["reply"] = self.model.generate(messages, timeout=timeout)
            except Exception as exc:
                outcome["error"] = exc
            finally:
                finished.set()

        threading.Thread(target=worker, name=f"generate-{chatbot_id}", daemon=True).start()
        while not finished.wait(CANCEL_POLL_INTERVAL):
            self._check_cancelled(chatbot_id, cancel)

        if "error" in outcome:
            raise outcome["error"]
        return outcome["reply"]

    @traceable(name="chat_turn", run_type="chain", tags=["chat"])
    def chat(
        self,
        chatbot_id: str,
        user_message: str,
        cancel: Optional[threading.Event] = None,
    ) -> ChatResponse:
        """
        Run one blocking chat turn.

        Parameters
        ----------
        cancel : threading.Event, optional
            When set, the model wait stops and ``RequestCancelled`` is raised;
            nothing is persisted.

        Returns
        -------
        ChatResponse
            Reply text, generation time in milliseconds and a timestamp.

        Raises
        ------
        NotFoundError, BackendFailure, ModelFailure, ValidationFailure,
        RequestCancelled, RateLimited
        """
        messages = self._compose(chatbot_id, user_message)
        self._check_rate(chatbot_id)
        self._check_cancelled(chatbot_id, cancel)

        start = time.monotonic()
        reply = self._generate(chatbot_id, messages, float(self.config.model.timeout), cancel)
        duration_ms = int((time.monotonic() - start) * 1000)

        self._check_cancelled(chatbot_id, cancel)
        self._persist(chatbot_id, user_message, reply)
        logger.info("Chatbot %s replied in %d ms (first 80 chars): %s", chatbot_id, duration_ms, reply[:80])
        return ChatResponse(message=reply, duration=duration_ms, timestamp=datetime.now())

    def _pump(self, chatbot_id: str, stream: Iterator[str]) -> tuple:
        """
        Drain *stream* on a daemon thread into a queue.

        Items are ``("chunk", text)`` followed by one terminal ``("end", None)``
        or ``("error", exc)``, queued after the stream is closed.  Setting the
        returned stop event makes the thread close the stream at the next chunk.
        """
        items: "queue.Queue[tuple]" = queue.Queue()
        stop = threading.Event()

        def worker() -> None:
            outcome: tuple = ("end", None)
            try:
                for chunk in stream:
                    if stop.is_set():
                        break
                    items.put(("chunk", chunk))
            except Exception as exc:
                outcome = ("error", exc)
            finally:
                try:
                    stream.close()
                finally:
                    items.put(outcome)

        pump = threading.Thread(target=worker, name=f"stream-pump-{chatbot_id}", daemon=True)
        pump.start()
        return items, stop, pump

    @traceable(name="chat_turn_stream", run_type="chain", tags=["chat", "stream"])
    def stream_chat(
        self,
        chatbot_id: str,
        user_message: str,
        sink: Optional[ChunkSink] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """
        Run one streaming chat turn.

        Each chunk is passed to *sink* as soon as it arrives.  The turn is
        persisted only after the model stream ends normally.  Cancellation
        and the deadline are observed while waiting for a chunk too, so a
        stalled model cannot hold the turn open.

        Parameters
        ----------
        sink : callable, optional
            Receives every text chunk in order.
        cancel : threading.Event, optional
            When set, the stream is closed and ``RequestCancelled`` raised.

        Returns
        -------
        str
            The full reply (concatenation of all chunks).
        """
        messages = self._compose(chatbot_id, user_message)
        self._check_rate(chatbot_id)
        self._check_cancelled(chatbot_id, cancel)

        timeout = float(self.config.model.timeout)
        deadline = time.monotonic() + timeout
        chunks: List[str] = []

        items, stop, pump = self._pump(chatbot_id, self.model.stream(messages, timeout=timeout))
        try:
            while True:
                self._check_cancelled(chatbot_id, cancel)
                if time.monotonic() > deadline:
                    raise ModelFailure(f"model stream exceeded {timeout:.0f}s")
                try:
                    kind, payload = items.get(timeout=CANCEL_POLL_INTERVAL)
                except queue.Empty:
                    continue
                if kind == "end":
                    break
                if kind == "error":
                    raise payload
                chunks.append(payload)
                if sink is not None:
                    sink(payload)
        except BaseException:
            stop.set()
            pump.join(timeout=CANCEL_POLL_INTERVAL * 2)
            raise

        self._check_cancelled(chatbot_id, cancel)

        reply = "".join(chunks)
        self._persist(chatbot_id, user_message, reply)
        logger.info("Chatbot %s streamed %d chunk(s), %d chars", chatbot_id, len(chunks), len(reply))
        return reply
