"""
Milvus Vector Index Wrapper

Handles:
  - Creating the knowledge collection (id / content / embedding) on first use
  - Inserting (content, embedding) rows
  - Nearest-neighbour search returning content strings, closest first

The collection uses an HNSW index with L2 distance (M=16, efConstruction=200).
Any pymilvus error is re-raised as ``IndexFailure``.
"""

from __future__ import annotations

from typing import List

from pymilvus import DataType, MilvusClient, MilvusException

from src.core.config import MilvusConfig
from src.core.errors import IndexFailure
from src.utils.logging import get_logger

logger = get_logger(__name__)

_MAX_CONTENT_LENGTH = 65535
_METRIC = "L2"
_HNSW_PARAMS = {"M": 16, "efConstruction": 200}
_MIN_SEARCH_EF = 64


class MilvusIndex:
    """Narrow vector-index interface over a pymilvus ``MilvusClient``."""

    def __init__(self, client: MilvusClient) -> None:
        self._client = client

    @classmethod
    def from_config(cls, cfg: MilvusConfig) -> "MilvusIndex":
        uri = f"http://{cfg.host}:{cfg.port}"
        try:
            client = MilvusClient(uri=uri)
        except MilvusException as exc:
            raise IndexFailure(f"connect milvus at {uri}: {exc}") from exc
        logger.info("Connected to Milvus at %s", uri)
        return cls(client)

    def has_collection(self, name: str) -> bool:
        try:
            return bool(self._client.has_collection(collection_name=name))
        except MilvusException as exc:
            raise IndexFailure(f"check collection exists: {exc}") from exc

    def create_collection(self, name: str, dim: int) -> None:
        """Create *name* with a *dim*-dimensional vector field unless it already exists."""
        if self.has_collection(name):
            logger.debug("Milvus collection '%s' already exists", name)
            return

        try:
            schema = self._client.create_schema(
                auto_id=True,
                enable_dynamic_field=False,
                description="Knowledge base collection",
            )
            schema.add_field(field_name="id", datatype=DataType.INT64, is_primary=True)
            schema.add_field(
                field_name="content", datatype=DataType.VARCHAR, max_length=_MAX_CONTENT_LENGTH
            )
            schema.add_field(field_name="embedding", datatype=DataType.FLOAT_VECTOR, dim=dim)

            index_params = self._client.prepare_index_params()
            index_params.add_index(
                field_name="embedding",
                index_type="HNSW",
                metric_type=_METRIC,
                params=_HNSW_PARAMS,
            )

            self._client.create_collection(
                collection_name=name,
                schema=schema,
                index_params=index_params,
                consistency_level="Strong",
            )
        except MilvusException as exc:
            raise IndexFailure(f"create collection '{name}': {exc}") from exc

        logger.info("Created Milvus collection '%s' (dim=%d)", name, dim)

    def insert(self, name: str, content: str, embedding: List[float]) -> None:
        try:
            self._client.insert(
                collection_name=name,
                data=[{"content": content, "embedding": embedding}],
            )
        except MilvusException as exc:
            raise IndexFailure(f"insert vector: {exc}") from exc

    def search(self, name: str, embedding: List[float], top_k: int) -> List[str]:
        """
        Return up to *top_k* stored contents ranked by L2 distance (closest first).

        An empty collection yields an empty list.
        """
        if top_k <= 0:
            return []
        try:
            results = self._client.search(
                collection_name=name,
                data=[embedding],
                limit=top_k,
                output_fields=["content"],
                search_params={
                    "metric_type": _METRIC,
                    "params": {"ef": max(_MIN_SEARCH_EF, top_k)},
                },
            )
        except MilvusException as exc:
            raise IndexFailure(f"search vectors: {exc}") from exc

        if not results:
            return []
        hits = sorted(results[0], key=lambda hit: hit["distance"])
        return [hit["entity"]["content"] for hit in hits]

    def close(self) -> None:
        try:
            self._client.close()
        except MilvusException as exc:
            raise IndexFailure(f"close milvus: {exc}") from exc
