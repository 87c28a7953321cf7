"""
Error taxonomy for the chatbot backend.

Every error raised by the storage, retrieval and generation layers derives
from ``ChatbotError`` so the HTTP layer can map them in one place.  Errors
that wrap a driver or network exception keep it as ``__cause__``.
"""

from __future__ import annotations


class ChatbotError(Exception):
    """Base class for all backend errors."""


class NotFoundError(ChatbotError):
    """A chatbot (or the owner of a conversation) does not exist."""

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class BackendFailure(ChatbotError):
    """Connection, query or codec failure inside a storage backend."""


class EmbeddingFailure(ChatbotError):
    """The embedding endpoint could not produce a vector."""


class IndexFailure(ChatbotError):
    """The vector index rejected a collection, insert or search call."""


class ModelFailure(ChatbotError):
    """The language model failed or exceeded its time budget."""


class ValidationFailure(ChatbotError):
    """Malformed input rejected at the service boundary."""


class RequestCancelled(ChatbotError):
    """The caller abandoned the request before the turn completed."""


class RAGUnavailable(ChatbotError):
    """A knowledge-base operation was requested but RAG is not configured."""


class RateLimited(ChatbotError):
    """A chatbot received more chat turns than ``agent.rate_limit`` allows."""
