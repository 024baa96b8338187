"""
Qdrant-backed vector store.

Chunk ids are UUIDs, so they are valid Qdrant point ids as-is. Keyword
payload indexes on level, subject and document_id back the search filter and
reindex deletes.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

import numpy as np

from curriculum_retrieval.config import VectorStoreConfig
from curriculum_retrieval.core.errors import (
    ConfigurationError,
    ConnectivityError,
    RetrievalEngineError,
)
from curriculum_retrieval.core.protocols import CollectionStats, IndexedPoint, SearchResult
from curriculum_retrieval.store.common import (
    DOCUMENT_FIELD,
    FILTER_FIELDS,
    check_points,
    clamp_score,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

INDEXED_FIELDS = (*FILTER_FIELDS, DOCUMENT_FIELD)
SCROLL_BATCH_SIZE = 256


def build_filter(conditions: dict[str, str] | None) -> Any:
    """Conjunction of equality conditions, or None when there are none."""
    from qdrant_client.models import FieldCondition, Filter, MatchValue

    if not conditions:
        return None
    return Filter(
        must=[
            FieldCondition(key=key, match=MatchValue(value=value))
            for key, value in conditions.items()
        ]
    )


class QdrantVectorStore:
    """Qdrant vector store. Requires a reachable Qdrant instance."""

    def __init__(self, config: VectorStoreConfig):
        self.config = config
        self.collection = config.collection_name
        self._client = None

    def connect(self) -> None:
        if self._client is not None:
            return
        if not self.config.url:
            raise ConfigurationError("QDRANT_URL is required for the qdrant backend")

        from qdrant_client import QdrantClient

        self._client = QdrantClient(
            url=self.config.url,
            api_key=self.config.api_key,
            timeout=max(1, int(self.config.timeout_seconds)),
        )
        logger.info(f"Qdrant client initialized for {self.config.url}")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _call(self, description: str, fn: Callable[[Any], T]) -> T:
        self.connect()
        try:
            return fn(self._client)
        except RetrievalEngineError:
            raise
        except Exception as e:
            # qdrant-client surfaces HTTP, gRPC and response errors with
            # unrelated types; they all mean the store call failed
            raise ConnectivityError(f"Qdrant {description} failed: {e}") from e

    # -----------------------------------------------------------------------
    # SCHEMA
    # -----------------------------------------------------------------------

    def ensure_collection(self) -> None:
        """Create the collection and payload indexes, or verify its vector size."""
        from qdrant_client.models import Distance, HnswConfigDiff, PayloadSchemaType, VectorParams

        def ensure(client: Any) -> None:
            names = [c.name for c in client.get_collections().collections]
            if self.collection in names:
                self._check_vector_size(client)
                return

            client.create_collection(
                collection_name=self.collection,
                vectors_config=VectorParams(
                    size=self.config.embedding_dim,
                    distance=Distance.COSINE,
                ),
                hnsw_config=HnswConfigDiff(m=16, ef_construct=100),
            )
            for field_name in INDEXED_FIELDS:
                client.create_payload_index(
                    collection_name=self.collection,
                    field_name=field_name,
                    field_schema=PayloadSchemaType.KEYWORD,
                )
            logger.info(
                f"Collection {self.collection!r} created "
                f"({self.config.embedding_dim} dims, {len(INDEXED_FIELDS)} payload indexes)"
            )

        self._call("collection setup", ensure)

    def _check_vector_size(self, client: Any) -> None:
        info = client.get_collection(self.collection)
        vectors = info.config.params.vectors
        size = getattr(vectors, "size", None)
        if size is not None and size != self.config.embedding_dim:
            raise ConfigurationError(
                f"Collection {self.collection!r} stores {size}-dim vectors but the "
                f"embedding provider produces {self.config.embedding_dim}; reindex required"
            )

    # -----------------------------------------------------------------------
    # POINTS
    # -----------------------------------------------------------------------

    def upsert_points(self, points: list[IndexedPoint]) -> None:
        from qdrant_client.models import PointStruct

        if not points:
            return
        check_points(points, self.config.embedding_dim)

        structs = [
            PointStruct(
                id=p.id,
                vector=np.asarray(p.vector, dtype=np.float32).tolist(),
                payload=p.payload,
            )
            for p in points
        ]
        self._call(
            "upsert",
            lambda client: client.upsert(
                collection_name=self.collection,
                points=structs,
                wait=True,
            ),
        )
        logger.debug(f"Upserted {len(structs)} points into {self.collection}")

    def get_points(self, ids: list[str]) -> dict[str, dict[str, Any]]:
        if not ids:
            return {}
        records = self._call(
            "retrieve",
            lambda client: client.retrieve(
                collection_name=self.collection,
                ids=list(ids),
                with_payload=True,
                with_vectors=False,
            ),
        )
        return {str(r.id): dict(r.payload or {}) for r in records}

    def query(
        self,
        vector: np.ndarray,
        filter: dict[str, str] | None = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        query_filter = build_filter(filter)
        response = self._call(
            "query",
            lambda client: client.query_points(
                collection_name=self.collection,
                query=np.asarray(vector, dtype=np.float32).tolist(),
                query_filter=query_filter,
                limit=limit,
                with_payload=True,
            ),
        )
        results = [
            SearchResult(id=str(p.id), score=clamp_score(p.score), payload=dict(p.payload or {}))
            for p in response.points
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        return results

    def delete_by_prefix(self, document_id: str) -> int:
        from qdrant_client.models import FilterSelector

        document_filter = build_filter({DOCUMENT_FIELD: document_id})

        def delete(client: Any) -> int:
            count = client.count(
                collection_name=self.collection,
                count_filter=document_filter,
                exact=True,
            ).count
            if count:
                client.delete(
                    collection_name=self.collection,
                    points_selector=FilterSelector(filter=document_filter),
                    wait=True,
                )
            return count

        removed = self._call("delete", delete)
        logger.info(f"Deleted {removed} points of document {document_id}")
        return removed

    def distinct_values(
        self,
        fields: tuple[str, ...],
        filter: dict[str, str] | None = None,
    ) -> set[tuple]:
        """Scroll the matching points, payload only, and collect field combinations."""
        scroll_filter = build_filter(filter)

        def scan(client: Any) -> set[tuple]:
            values: set[tuple] = set()
            offset = None
            while True:
                records, offset = client.scroll(
                    collection_name=self.collection,
                    scroll_filter=scroll_filter,
                    limit=SCROLL_BATCH_SIZE,
                    offset=offset,
                    with_payload=list(fields),
                    with_vectors=False,
                )
                for record in records:
                    payload = record.payload or {}
                    values.add(tuple(payload.get(f) for f in fields))
                if offset is None:
                    return values

        return self._call("scroll", scan)

    # -----------------------------------------------------------------------
    # OPS
    # -----------------------------------------------------------------------

    def health(self) -> bool:
        try:
            collections = self._call(
                "health check", lambda client: client.get_collections().collections
            )
        except RetrievalEngineError as e:
            logger.warning(f"Qdrant health check failed: {e}")
            return False
        logger.debug(f"Qdrant health check OK - {len(collections)} collections")
        return True

    def stats(self) -> CollectionStats:
        info = self._call("stats", lambda client: client.get_collection(self.collection))
        status = getattr(info.status, "value", info.status)
        vectors = info.config.params.vectors
        return CollectionStats(
            point_count=info.points_count or 0,
            status=str(status),
            vector_size=getattr(vectors, "size", None),
        )
