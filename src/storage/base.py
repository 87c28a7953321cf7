"""
Storage Abstract Base Class

Every persistence backend implements this contract.  Callers receive an
instance from ``new_storage()`` at startup and pass it explicitly to the
services that need it.
"""

from abc import ABC, abstractmethod
from typing import List

from src.core.models import Chatbot, Conversation


class Storage(ABC):
    """
    Persistence contract for chatbots and their conversation turns.

    Implementations must:
    - raise ``NotFoundError`` for missing chatbots and ``BackendFailure``
      (chained to the driver error) for infrastructure problems
    - assign conversation ids and timestamps themselves
    - return history oldest-first whatever their internal ordering
    """

    @abstractmethod
    def save_chatbot(self, chatbot: Chatbot) -> None:
        """Insert or overwrite *chatbot* by id and refresh its ``updated_at``."""

    @abstractmethod
    def get_chatbot(self, chatbot_id: str) -> Chatbot:
        """Return a snapshot of the chatbot or raise ``NotFoundError``."""

    @abstractmethod
    def get_chatbots(self) -> List[Chatbot]:
        """Return every stored chatbot."""

    @abstractmethod
    def delete_chatbot(self, chatbot_id: str) -> None:
        """Remove the chatbot and all its conversations, or raise ``NotFoundError``."""

    @abstractmethod
    def save_conversation(self, conv: Conversation) -> Conversation:
        """
        Append a conversation turn.

        Any ``id`` / ``created_at`` on *conv* is overwritten.  Returns the
        record as stored.
        """

    @abstractmethod
    def get_conversation_history(self, chatbot_id: str, limit: int) -> List[Conversation]:
        """Return at most *limit* most recent turns, oldest first."""

    @abstractmethod
    def close(self) -> None:
        """Release connections held by the backend."""

    def __enter__(self) -> "Storage":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
