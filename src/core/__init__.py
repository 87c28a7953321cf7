"""Shared models, errors and configuration"""

from .config import Config, load_config
from .errors import (
    ChatbotError,
    NotFoundError,
    BackendFailure,
    EmbeddingFailure,
    IndexFailure,
    ModelFailure,
    ValidationFailure,
    RequestCancelled,
    RAGUnavailable,
    RateLimited,
)
from .models import (
    Role,
    ChatMessage,
    Chatbot,
    Conversation,
    CreateChatbotRequest,
    UpdateChatbotRequest,
    ChatResponse,
)

__all__ = [
    "Config",
    "load_config",
    # Errors
    "ChatbotError",
    "NotFoundError",
    "BackendFailure",
    "EmbeddingFailure",
    "IndexFailure",
    "ModelFailure",
    "ValidationFailure",
    "RequestCancelled",
    "RAGUnavailable",
    "RateLimited",
    # Models
    "Role",
    "ChatMessage",
    "Chatbot",
    "Conversation",
    "CreateChatbotRequest",
    "UpdateChatbotRequest",
    "ChatResponse",
]
