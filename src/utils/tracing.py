"""
LangSmith Tracing Helper

Provides the ``@traceable`` decorator so chat turns and knowledge searches
can be logged to LangSmith with a single import line.

Set these variables in .env to enable tracing:
    LANGCHAIN_TRACING_V2=true
    LANGCHAIN_API_KEY=ls__...
    LANGCHAIN_PROJECT=persona-chat   (optional, default project name)

When the variables are missing, ``traceable`` returns the function unchanged.
"""

from __future__ import annotations

import os
from typing import Any, Callable, TypeVar

from src.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def tracing_enabled() -> bool:
    return (
        os.getenv("LANGCHAIN_TRACING_V2", "").lower() in ("true", "1", "yes")
        and bool(os.getenv("LANGCHAIN_API_KEY", "").strip())
    )


def traceable(
    name: str | None = None,
    run_type: str = "chain",
    tags: list[str] | None = None,
) -> Callable[[F], F]:
    """
    Decorator that wraps a function with LangSmith tracing.

    Tracing is decided once, when the decorator is applied.

    Parameters
    ----------
    name : str | None
        Display name in the LangSmith UI (defaults to the function name).
    run_type : str
        One of "chain", "llm", "tool", "retriever" (default "chain").
    tags : list[str] | None
        Optional list of tags visible in the LangSmith UI.

    Usage
    -----
    from src.utils.tracing import traceable

    @traceable(name="chat_turn", run_type="chain", tags=["chat"])
    def chat(self, chatbot_id: str, message: str) -> ChatResponse:
        ...
    """
    def decorator(func: F) -> F:
        if not tracing_enabled():
            return func

        from langsmith import traceable as ls_traceable  # noqa: PLC0415

        logger.debug("LangSmith tracing applied to '%s'", name or func.__name__)
        wrapped = ls_traceable(
            run_type=run_type,
            name=name or func.__name__,
            tags=tags or [],
        )(func)
        return wrapped  # type: ignore[return-value]

    return decorator
