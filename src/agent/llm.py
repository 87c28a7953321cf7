"""
Chat model client.

Talks to any OpenAI-compatible chat completions endpoint.  For the default
``ollama`` provider the client is pointed at ``{base_url}/v1``.  The SDK's
own retries are disabled: a turn makes exactly one model call.

Usage
-----
    model = ChatModel.from_config(cfg.model, cfg.agent)
    text = model.generate(messages, timeout=60)
    for chunk in model.stream(messages, timeout=60):
        ...
"""

from __future__ import annotations

from typing import Iterator, List, Optional

import httpx
import openai
from openai import OpenAI

from src.core.config import AgentConfig, ModelConfig
from src.core.errors import ModelFailure
from src.core.models import ChatMessage
from src.utils.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_PROVIDERS = ("ollama", "openai")


def _resolve_base_url(provider: str, base_url: str) -> Optional[str]:
    if provider == "ollama":
        base = base_url.rstrip("/")
        return base if base.endswith("/v1") else f"{base}/v1"
    return base_url or None


class ChatModel:
    """Blocking and streaming chat generation."""

    def __init__(
        self,
        client: OpenAI,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 0,
    ) -> None:
        self._client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_config(cls, model_cfg: ModelConfig, agent_cfg: Optional[AgentConfig] = None) -> "ChatModel":
        provider = model_cfg.provider.lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"unsupported model provider: {model_cfg.provider}")

        client = OpenAI(
            base_url=_resolve_base_url(provider, model_cfg.base_url),
            # Ollama ignores the key but the SDK requires one
            api_key=model_cfg.api_key or provider,
            timeout=float(model_cfg.timeout),
            max_retries=0,
        )
        agent_cfg = agent_cfg or AgentConfig()
        logger.info("Chat model: %s via %s", model_cfg.model, provider)
        return cls(
            client,
            model_cfg.model,
            temperature=agent_cfg.temperature,
            max_tokens=agent_cfg.max_tokens,
        )

    def _request_kwargs(self, messages: List[ChatMessage], timeout: float) -> dict:
        kwargs = {
            "model": self.model,
            "messages": [m.to_openai() for m in messages],
            "temperature": self.temperature,
            "timeout": timeout,
        }
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens
        return kwargs

    def generate(self, messages: List[ChatMessage], timeout: float) -> str:
        """Return the full completion text for *messages*."""
        try:
            response = self._client.chat.completions.create(**self._request_kwargs(messages, timeout))
        except openai.APITimeoutError as exc:
            raise ModelFailure(f"model timed out after {timeout}s") from exc
        except openai.OpenAIError as exc:
            raise ModelFailure(f"generate response: {exc}") from exc

        if not response.choices:
            raise ModelFailure("model returned no choices")
        content = response.choices[0].message.content or ""
        logger.debug("Model returned %d chars", len(content))
        return content

    def stream(self, messages: List[ChatMessage], timeout: float) -> Iterator[str]:
        """
        Yield completion text chunks as they arrive.

        Exhaustion of the iterator is the end-of-stream signal; failures
        raise ``ModelFailure``.  Closing the iterator early closes the
        underlying HTTP stream.
        """
        try:
            stream = self._client.chat.completions.create(
                stream=True, **self._request_kwargs(messages, timeout)
            )
        except openai.APITimeoutError as exc:
            raise ModelFailure(f"model timed out after {timeout}s") from exc
        except openai.OpenAIError as exc:
            raise ModelFailure(f"stream generate: {exc}") from exc

        try:
            for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except (openai.OpenAIError, httpx.HTTPError) as exc:
            raise ModelFailure(f"stream recv: {exc}") from exc
        finally:
            stream.close()
