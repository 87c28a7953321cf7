"""
Data models

Pydantic schemas for chatbot personas, conversation turns and the messages
exchanged with the language model.  The same models are used by the storage
backends (JSON for Redis, column mapping for SQLite) and the HTTP layer.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class Role(str, Enum):
    """Speaker of a model message"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """A single entry of the message sequence sent to the model"""
    role: Role = Field(description="Who is speaking")
    content: str = Field(description="Message text")

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(role=Role.ASSISTANT, content=content)

    def to_openai(self) -> dict:
        return {"role": self.role.value, "content": self.content}


class Chatbot(BaseModel):
    """
    A chatbot persona.

    ``system_prompt`` is derived from personality and background when the
    chatbot is created and is stored as-is afterwards.
    """
    id: str = Field(description="Opaque unique identifier")
    name: str = Field(description="Display name")
    personality: str = Field(default="", description="Personality description")
    background: str = Field(default="", description="Background story")
    system_prompt: str = Field(default="", description="Derived system prompt")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    model_config = {
        "json_schema_extra": {
            "example": {
                "id": "3f0c1c1e-6a59-4a53-9df4-5a6d3c1f2b11",
                "name": "Lin",
                "personality": "温柔、耐心",
                "background": "一名图书管理员",
                "system_prompt": "性格设定：温柔、耐心\n\n背景设定：一名图书管理员\n\n请严格按照以上设定进行对话，保持角色的一致性。",
                "created_at": "2026-01-05T10:00:00",
                "updated_at": "2026-01-05T10:00:00",
            }
        }
    }


class Conversation(BaseModel):
    """One user/bot exchange.  ``id`` and ``created_at`` are set by the storage."""
    id: int = Field(default=0, description="Backend-assigned sequence id")
    chatbot_id: str = Field(description="Owning chatbot id")
    user_message: str = Field(description="What the user said")
    bot_message: str = Field(description="What the chatbot answered")
    created_at: datetime = Field(default_factory=datetime.now)


# ── Requests / responses ──────────────────────────────────────────────────────

class CreateChatbotRequest(BaseModel):
    name: str = Field(min_length=1)
    personality: str = ""
    background: str = ""

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must not be blank")
        return value.strip()


class UpdateChatbotRequest(BaseModel):
    name: Optional[str] = None
    personality: Optional[str] = None
    background: Optional[str] = None


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)


class ChatResponse(BaseModel):
    message: str
    duration: int = Field(description="Generation time in milliseconds")
    timestamp: datetime = Field(default_factory=datetime.now)


class KnowledgeRequest(BaseModel):
    content: str = Field(min_length=1)


class KnowledgeSearchResponse(BaseModel):
    query: str
    results: List[str]


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None
