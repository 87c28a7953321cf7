"""Chat turns, chatbot lifecycle and the model client."""

from .chat_service import ChatService
from .llm import ChatModel
from .prompts import build_messages, build_system_prompt

__all__ = [
    "ChatService",
    "ChatModel",
    "build_messages",
    "build_system_prompt",
]
