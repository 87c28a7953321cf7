"""
RAG Service

Keeps one named Milvus collection of knowledge snippets and folds the most
relevant snippets into a chat message sequence before it reaches the model.

Graceful degradation: ``enhance_messages`` never raises.  When retrieval
fails, or finds nothing, the caller gets its original message list back and
the chatbot answers from the model alone.
"""

from __future__ import annotations

from typing import List

from src.core.config import Config
from src.core.models import ChatMessage, Role
from src.utils.logging import get_logger
from src.utils.tracing import traceable
from .embedder import OllamaEmbedder
from .milvus_store import MilvusIndex

logger = get_logger(__name__)

DEFAULT_COLLECTION = "knowledge_base"
DEFAULT_DIMENSION = 768          # nomic-embed-text
ENHANCE_TOP_K = 3
KNOWLEDGE_PREAMBLE = "以下是从知识库中检索到的相关信息，请基于这些信息回答问题：\n\n"


class RAGService:
    """Embedding + vector search over a single knowledge collection."""

    def __init__(
        self,
        embedder: OllamaEmbedder,
        index: MilvusIndex,
        collection_name: str = DEFAULT_COLLECTION,
        dimension: int = DEFAULT_DIMENSION,
    ) -> None:
        """
        Raises
        ------
        IndexFailure
            If the collection cannot be checked or created.
        """
        self.embedder = embedder
        self.index = index
        self.collection_name = collection_name
        self.dimension = dimension

        self.index.create_collection(collection_name, dimension)
        logger.info("RAG service ready (collection=%s, dim=%d)", collection_name, dimension)

    @classmethod
    def from_config(cls, cfg: Config) -> "RAGService":
        embedder = OllamaEmbedder(cfg.rag.ollama_url, model=cfg.rag.embedding_model)
        index = MilvusIndex.from_config(cfg.storage.milvus)
        return cls(
            embedder,
            index,
            collection_name=cfg.rag.collection,
            dimension=cfg.rag.dimension,
        )

    def add_knowledge(self, content: str) -> None:
        """
        Embed *content* and store it in the collection.

        The embedding is computed before anything is written, so a failed
        embedding leaves the index untouched.
        """
        embedding = self.embedder.embed(content)
        self.index.insert(self.collection_name, content, embedding)
        logger.info("RAG: added knowledge snippet (%d chars)", len(content))

    @traceable(name="search_knowledge", run_type="retriever", tags=["rag"])
    def search_knowledge(self, query: str, top_k: int = ENHANCE_TOP_K) -> List[str]:
        """Return up to *top_k* snippets for *query*, most similar first."""
        embedding = self.embedder.embed(query)
        results = self.index.search(self.collection_name, embedding, top_k)
        logger.info("RAG: retrieved %d snippet(s) for query=%s", len(results), query[:60])
        return results

    def enhance_messages(self, query: str, messages: List[ChatMessage]) -> List[ChatMessage]:
        """
        Add retrieved knowledge to the system message of *messages*.

        - retrieval error or no snippets: *messages* itself is returned
        - system messages are merged, in order, into one leading system
          message that ends with the snippets
        - with no system message, one carrying the knowledge preamble is
          prepended

        The result never holds more than one system message.
        """
        try:
            knowledge = self.search_knowledge(query, ENHANCE_TOP_K)
        except Exception as exc:
            logger.warning("RAG: retrieval failed, using original messages: %s", exc)
            return messages

        if not knowledge:
            return messages

        knowledge_text = "\n\n".join(knowledge)
        system_parts = [m.content for m in messages if m.role == Role.SYSTEM]
        others = [m for m in messages if m.role != Role.SYSTEM]

        if system_parts:
            system = ChatMessage.system("\n\n".join(system_parts) + "\n\n" + knowledge_text)
        else:
            system = ChatMessage.system(KNOWLEDGE_PREAMBLE + knowledge_text)
        return [system] + others

    def close(self) -> None:
        self.embedder.close()
        self.index.close()
