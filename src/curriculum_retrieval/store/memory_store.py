"""
In-memory vector store for development/testing.

Implements the same interface as PgVectorStore and QdrantVectorStore
without a database. Uses cosine similarity for searching.
"""

from __future__ import annotations

import threading
from typing import Any

import numpy as np

from curriculum_retrieval.config import VectorStoreConfig
from curriculum_retrieval.core.errors import ConnectivityError
from curriculum_retrieval.core.protocols import CollectionStats, IndexedPoint, SearchResult
from curriculum_retrieval.store.common import DOCUMENT_FIELD, check_points, clamp_score


class InMemoryVectorStore:
    """
    In-memory vector store.

    Set `healthy = False` to simulate an unreachable store: health() then
    returns False and every other call raises ConnectivityError.
    """

    def __init__(self, config: VectorStoreConfig | None = None):
        self.config = config or VectorStoreConfig()
        self._points: dict[str, IndexedPoint] = {}
        self._lock = threading.Lock()
        self.healthy = True

    def _require_healthy(self) -> None:
        if not self.healthy:
            raise ConnectivityError("in-memory store marked unhealthy")

    def connect(self) -> None:
        """No-op for in-memory store."""
        pass

    def close(self) -> None:
        """No-op for in-memory store."""
        pass

    def ensure_collection(self) -> None:
        """No-op for in-memory store."""
        self._require_healthy()

    def upsert_points(self, points: list[IndexedPoint]) -> None:
        """Insert or overwrite points by id."""
        self._require_healthy()
        check_points(points, self.config.embedding_dim)
        with self._lock:
            for point in points:
                self._points[point.id] = IndexedPoint(
                    id=point.id,
                    vector=np.asarray(point.vector, dtype=np.float32),
                    payload=dict(point.payload),
                )

    def get_points(self, ids: list[str]) -> dict[str, dict[str, Any]]:
        self._require_healthy()
        with self._lock:
            return {
                point_id: dict(self._points[point_id].payload)
                for point_id in ids
                if point_id in self._points
            }

    def _cosine_similarity(self, a: np.ndarray, b: np.ndarray) -> float:
        """Calculate cosine similarity between two vectors."""
        denom = float(np.linalg.norm(a) * np.linalg.norm(b))
        if denom == 0.0:
            return 0.0
        return float(np.dot(a, b) / denom)

    def query(
        self,
        vector: np.ndarray,
        filter: dict[str, str] | None = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        """Search using cosine similarity."""
        self._require_healthy()
        with self._lock:
            candidates = list(self._points.values())

        scored = []
        for point in candidates:
            if filter and any(point.payload.get(k) != v for k, v in filter.items()):
                continue
            score = clamp_score(self._cosine_similarity(vector, point.vector))
            scored.append(SearchResult(id=point.id, score=score, payload=dict(point.payload)))

        # Sort by score descending, id as tie-breaker for stable output
        scored.sort(key=lambda r: (-r.score, r.id))
        return scored[:limit]

    def health(self) -> bool:
        return self.healthy

    def stats(self) -> CollectionStats:
        self._require_healthy()
        with self._lock:
            count = len(self._points)
        return CollectionStats(
            point_count=count,
            status="green",
            vector_size=self.config.embedding_dim,
        )

    def delete_by_prefix(self, document_id: str) -> int:
        self._require_healthy()
        with self._lock:
            doomed = [
                point_id
                for point_id, point in self._points.items()
                if point.payload.get(DOCUMENT_FIELD) == document_id
            ]
            for point_id in doomed:
                del self._points[point_id]
        return len(doomed)

    def distinct_values(
        self,
        fields: tuple[str, ...],
        filter: dict[str, str] | None = None,
    ) -> set[tuple]:
        self._require_healthy()
        with self._lock:
            payloads = [point.payload for point in self._points.values()]
        return {
            tuple(payload.get(f) for f in fields)
            for payload in payloads
            if not filter or all(payload.get(k) == v for k, v in filter.items())
        }

    def point_ids(self, document_id: str | None = None) -> set[str]:
        """Ids currently stored, optionally for one document."""
        with self._lock:
            return {
                point_id
                for point_id, point in self._points.items()
                if document_id is None or point.payload.get(DOCUMENT_FIELD) == document_id
            }
