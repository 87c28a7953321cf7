"""FastAPI server for the persona chat backend."""

# Load .env FIRST so LANGCHAIN_* variables are visible when @traceable
# decorators are evaluated at import time.
from dotenv import load_dotenv
load_dotenv()

import asyncio
import json
import queue
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from src.agent.chat_service import CANCEL_POLL_INTERVAL, ChatService
from src.agent.llm import ChatModel
from src.core.config import Config, load_config
from src.core.errors import (
    ChatbotError,
    NotFoundError,
    RAGUnavailable,
    RateLimited,
    RequestCancelled,
    ValidationFailure,
)
from src.core.models import (
    ChatRequest,
    ChatResponse,
    Chatbot,
    Conversation,
    CreateChatbotRequest,
    ErrorResponse,
    KnowledgeRequest,
    KnowledgeSearchResponse,
    UpdateChatbotRequest,
)
from src.rag.service import RAGService
from src.storage.factory import new_storage
from src.storage.rate_limit import MemoryRateLimiter
from src.storage.redis_store import RedisStorage
from src.utils.logging import get_logger

logger = get_logger(__name__)

SERVICE_NAME = "persona-chat"
DEFAULT_HISTORY_LIMIT = 20

# (status code, error code) per error type; first match wins
_ERROR_STATUS = [
    (NotFoundError, 404, "not_found"),
    (ValidationFailure, 400, "invalid_request"),
    (RAGUnavailable, 503, "rag_unavailable"),
    (RequestCancelled, 408, "request_cancelled"),
    (RateLimited, 429, "rate_limited"),
]


class MessageResponse(BaseModel):
    message: str


# ── Wiring ─────────────────────────────────────────────────────────────────────

def build_chat_service(cfg: Config) -> ChatService:
    """
    Construct storage, model and (optionally) RAG from configuration.

    A RAG start-up failure is logged and the service runs without it.
    With ``agent.rate_limit`` set, Redis storage doubles as the shared
    limiter; other backends count per process.
    """
    storage = new_storage(cfg.storage)
    model = ChatModel.from_config(cfg.model, cfg.agent)

    rate_limiter = None
    if cfg.agent.rate_limit > 0:
        rate_limiter = storage if isinstance(storage, RedisStorage) else MemoryRateLimiter()
    service = ChatService(cfg, storage, model, rate_limiter=rate_limiter)

    if cfg.rag.enabled:
        try:
            service.set_rag_service(RAGService.from_config(cfg))
        except ChatbotError as exc:
            logger.warning("Failed to initialize RAG service: %s", exc)

    return service


def get_service(request: Request) -> ChatService:
    return request.app.state.chat_service


# ── Routes ─────────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/api/v1")


@router.post("/chatbots", response_model=Chatbot, status_code=201, summary="Create a chatbot")
def create_chatbot(req: CreateChatbotRequest, service: ChatService = Depends(get_service)) -> Chatbot:
    logger.info("POST /chatbots  name=%s", req.name[:80])
    return service.create_chatbot(req)


@router.get("/chatbots", response_model=List[Chatbot], summary="List chatbots")
def list_chatbots(service: ChatService = Depends(get_service)) -> List[Chatbot]:
    return service.get_chatbots()


@router.get("/chatbots/{chatbot_id}", response_model=Chatbot, summary="Get a chatbot")
def get_chatbot(chatbot_id: str, service: ChatService = Depends(get_service)) -> Chatbot:
    return service.get_chatbot(chatbot_id)


@router.put("/chatbots/{chatbot_id}", response_model=Chatbot, summary="Update a chatbot")
def update_chatbot(
    chatbot_id: str,
    req: UpdateChatbotRequest,
    service: ChatService = Depends(get_service),
) -> Chatbot:
    return service.update_chatbot(chatbot_id, req)


@router.delete("/chatbots/{chatbot_id}", response_model=MessageResponse, summary="Delete a chatbot")
def delete_chatbot(chatbot_id: str, service: ChatService = Depends(get_service)) -> MessageResponse:
    service.delete_chatbot(chatbot_id)
    return MessageResponse(message="deleted")


@router.post("/chatbots/{chatbot_id}/chat", response_model=ChatResponse, summary="Send a message")
async def chat(
    chatbot_id: str,
    req: ChatRequest,
    request: Request,
    service: ChatService = Depends(get_service),
) -> ChatResponse:
    """
    Run one chat turn and return the full reply with its generation time.

    The turn runs in the threadpool; a client disconnect cancels it and
    nothing is saved.
    """
    logger.info("POST /chat  chatbot=%s  message=%s", chatbot_id, req.message[:80])
    cancel = threading.Event()
    turn = asyncio.ensure_future(run_in_threadpool(service.chat, chatbot_id, req.message, cancel))
    try:
        while True:
            done, _ = await asyncio.wait({turn}, timeout=CANCEL_POLL_INTERVAL)
            if done:
                return turn.result()
            if not cancel.is_set() and await request.is_disconnected():
                logger.info("Client disconnected, cancelling chat for chatbot %s", chatbot_id)
                cancel.set()
    finally:
        cancel.set()


def _sse(data: dict, event: Optional[str] = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data, ensure_ascii=False)}\n\n"


async def stream_events(service: ChatService, chatbot_id: str, message: str) -> AsyncIterator[str]:
    """
    Server-sent events for a streaming chat turn.

    A worker thread runs the turn and hands chunks over a bounded queue;
    ``done`` and ``error`` are separate terminal events.  The queue is
    polled without blocking the event loop, and closing this generator
    (client gone) cancels the turn.
    """
    events: "queue.Queue[tuple]" = queue.Queue(maxsize=64)
    cancel = threading.Event()

    def offer(item: tuple) -> None:
        while not cancel.is_set():
            try:
                events.put(item, timeout=0.5)
                return
            except queue.Full:
                continue

    def worker() -> None:
        try:
            service.stream_chat(
                chatbot_id, message, sink=lambda chunk: offer(("chunk", chunk)), cancel=cancel
            )
        except Exception as exc:
            if not isinstance(exc, ChatbotError):
                logger.error("Streaming chat failed: %s", exc, exc_info=True)
            offer(("error", exc))
        else:
            offer(("done", None))

    threading.Thread(target=worker, name=f"stream-{chatbot_id}", daemon=True).start()

    try:
        while True:
            try:
                kind, payload = events.get_nowait()
            except queue.Empty:
                await asyncio.sleep(CANCEL_POLL_INTERVAL)
                continue
            if kind == "chunk":
                yield _sse({"content": payload})
            elif kind == "done":
                yield _sse({}, event="done")
                return
            else:
                _, code = _classify(payload)
                yield _sse({"error": code, "message": str(payload)}, event="error")
                return
    finally:
        cancel.set()


@router.post("/chatbots/{chatbot_id}/chat/stream", summary="Send a message, stream the reply")
def chat_stream(chatbot_id: str, req: ChatRequest, service: ChatService = Depends(get_service)):
    if not service.config.agent.enable_stream:
        raise ValidationFailure("streaming is disabled (agent.enable_stream)")
    # Fail fast with a normal HTTP error when the chatbot does not exist
    service.get_chatbot(chatbot_id)
    logger.info("POST /chat/stream  chatbot=%s  message=%s", chatbot_id, req.message[:80])
    return StreamingResponse(
        stream_events(service, chatbot_id, req.message),
        media_type="text/event-stream",
    )


@router.get(
    "/chatbots/{chatbot_id}/history",
    response_model=List[Conversation],
    summary="Conversation history, oldest first",
)
def get_history(
    chatbot_id: str,
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1),
    service: ChatService = Depends(get_service),
) -> List[Conversation]:
    return service.get_conversation_history(chatbot_id, limit)


@router.post("/knowledge", response_model=MessageResponse, summary="Add a knowledge snippet")
def add_knowledge(req: KnowledgeRequest, service: ChatService = Depends(get_service)) -> MessageResponse:
    service.add_knowledge(req.content)
    return MessageResponse(message="knowledge added")


@router.get("/knowledge/search", response_model=KnowledgeSearchResponse, summary="Search the knowledge base")
def search_knowledge(
    q: str = Query(..., min_length=1),
    top_k: int = Query(3, ge=1, le=50),
    service: ChatService = Depends(get_service),
) -> KnowledgeSearchResponse:
    return KnowledgeSearchResponse(query=q, results=service.search_knowledge(q, top_k))


# ── Errors ─────────────────────────────────────────────────────────────────────

def _classify(exc: Exception) -> tuple:
    for exc_type, status, code in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status, code
    return 500, "internal_error"


async def chatbot_error_handler(request: Request, exc: ChatbotError) -> JSONResponse:
    status, code = _classify(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    body = ErrorResponse(error=code, message=str(exc))
    return JSONResponse(status_code=status, content=body.model_dump())


# ── App factory ────────────────────────────────────────────────────────────────

def create_app(service: Optional[ChatService] = None, config: Optional[Config] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Pass *service* to serve a pre-built ChatService (tests do this);
    otherwise one is built from *config* (or ``load_config()``) at start-up
    and its storage and RAG connections are closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "chat_service", None) is None
        if owned:
            app.state.chat_service = build_chat_service(config or load_config())
        try:
            yield
        finally:
            if owned:
                svc: ChatService = app.state.chat_service
                svc.storage.close()
                if svc.rag is not None:
                    svc.rag.close()
                logger.info("Chat service shut down")

    app = FastAPI(
        title="Persona Chat",
        description=(
            "Chatbot persona management, conversation history and "
            "retrieval-augmented chat."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    if service is not None:
        app.state.chat_service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],            # tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatbotError, chatbot_error_handler)
    app.include_router(router)

    @app.get("/health", summary="Health check")
    def health_check() -> dict:
        """Returns 200 OK when the service is running."""
        return {"status": "ok", "service": SERVICE_NAME}

    return app
