"""
Ollama embedding client.

Calls ``POST {ollama_url}/api/embeddings`` with ``{"model", "prompt"}`` and
returns the ``embedding`` vector.  Every failure surfaces as
``EmbeddingFailure``.
"""

from __future__ import annotations

from typing import List, Optional

import httpx

from src.core.errors import EmbeddingFailure
from src.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"
DEFAULT_TIMEOUT = 30.0


class OllamaEmbedder:
    """Sync embedding client for an Ollama server."""

    def __init__(
        self,
        base_url: str,
        model: str = DEFAULT_EMBEDDING_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._client = client or httpx.Client(timeout=timeout)

    def embed(self, text: str) -> List[float]:
        """
        Return the embedding vector for *text*.

        Raises
        ------
        EmbeddingFailure
            On transport errors, non-200 responses, or a malformed body.
        """
        url = f"{self.base_url}/api/embeddings"
        try:
            response = self._client.post(url, json={"model": self.model, "prompt": text})
        except httpx.HTTPError as exc:
            raise EmbeddingFailure(f"embedding request failed: {exc}") from exc

        if response.status_code != 200:
            raise EmbeddingFailure(
                f"ollama API error ({response.status_code}): {response.text[:200]}"
            )

        try:
            embedding = [float(v) for v in response.json()["embedding"]]
        except (ValueError, KeyError, TypeError) as exc:
            raise EmbeddingFailure(f"decode embedding response: {exc}") from exc

        if not embedding:
            raise EmbeddingFailure(f"empty embedding returned by model {self.model}")

        logger.debug("Embedded %d chars -> %d dims", len(text), len(embedding))
        return embedding

    def close(self) -> None:
        self._client.close()
