"""
RAG (Retrieval-Augmented Generation) package.

    embedder       Ollama /api/embeddings client
    milvus_store   Milvus collection create / insert / search
    service        RAGService: add, search, prompt enhancement
"""

from .embedder import OllamaEmbedder
from .milvus_store import MilvusIndex
from .service import RAGService

__all__ = [
    "OllamaEmbedder",
    "MilvusIndex",
    "RAGService",
]
