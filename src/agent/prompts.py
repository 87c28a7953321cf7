"""Prompt templates and message assembly for chatbot personas."""

from typing import List, Sequence

from src.core.models import ChatMessage, Conversation

PERSONALITY_LABEL = "性格设定："
BACKGROUND_LABEL = "背景设定："
ROLE_INSTRUCTION = "请严格按照以上设定进行对话，保持角色的一致性。"
DEFAULT_SYSTEM_PROMPT = "你是一个友好的AI助手。"


def build_system_prompt(personality: str, background: str) -> str:
    """
    Derive a chatbot's system prompt from its personality and background.

    Both present -> two labelled paragraphs, then the role instruction.
    One present  -> that paragraph alone, then the role instruction.
    Neither      -> the generic assistant prompt.
    """
    parts = []
    if personality:
        parts.append(f"{PERSONALITY_LABEL}{personality}")
    if background:
        parts.append(f"{BACKGROUND_LABEL}{background}")

    if parts:
        return "\n\n".join(parts) + "\n\n" + ROLE_INSTRUCTION
    return DEFAULT_SYSTEM_PROMPT


def build_messages(
    system_prompt: str,
    history: Sequence[Conversation],
    user_message: str,
) -> List[ChatMessage]:
    """System prompt first, then each past turn as user/assistant, then the new message."""
    messages: List[ChatMessage] = []

    if system_prompt:
        messages.append(ChatMessage.system(system_prompt))

    for conv in history:
        messages.append(ChatMessage.user(conv.user_message))
        messages.append(ChatMessage.assistant(conv.bot_message))

    messages.append(ChatMessage.user(user_message))
    return messages
