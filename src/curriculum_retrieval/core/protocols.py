"""
Core protocols defining contracts for the retrieval engine.

All infrastructure components implement these protocols, so the ingestion
pipeline and retrieval service receive their collaborators by injection and
tests can swap in in-memory doubles.

PATTERN:
- Protocol defines the contract
- Production implementations (OpenAIEmbeddings, PgVectorStore, QdrantVectorStore)
- Test doubles (MockEmbeddings, InMemoryVectorStore, InMemoryCacheBackend)
- Factory functions for instantiation
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import numpy as np


# ---------------------------------------------------------------------------
# EMBEDDING PROVIDER PROTOCOL
# ---------------------------------------------------------------------------


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Contract for embedding generation.

    Implementations:
    - OpenAIEmbeddings (production, any OpenAI-compatible endpoint)
    - MockEmbeddings (testing)
    """

    @property
    def dimensions(self) -> int:
        """Fixed output dimension."""
        ...

    def embed(self, text: str) -> np.ndarray:
        """Generate embedding for a single text."""
        ...

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Generate embeddings for multiple texts."""
        ...


# ---------------------------------------------------------------------------
# VECTOR STORE PROTOCOL
# ---------------------------------------------------------------------------


@dataclass
class IndexedPoint:
    """A chunk vector with its payload, as persisted in the store."""
    id: str
    vector: np.ndarray
    payload: dict[str, Any]


@dataclass
class SearchResult:
    """A scored point returned by a similarity query."""
    id: str
    score: float
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class CollectionStats:
    """Collection summary for ingestion verification and dashboards."""
    point_count: int
    status: str
    vector_size: int | None = None

    def to_dict(self) -> dict:
        return {
            "point_count": self.point_count,
            "status": self.status,
            "vector_size": self.vector_size,
        }


@runtime_checkable
class VectorStore(Protocol):
    """
    Contract for the vector database wrapper.

    Implementations:
    - PgVectorStore (PostgreSQL + pgvector)
    - QdrantVectorStore (Qdrant)
    - InMemoryVectorStore (testing/development)

    Driver failures surface as ConnectivityError, missing settings as
    ConfigurationError. health() never raises.
    """

    def connect(self) -> None:
        ...

    def close(self) -> None:
        ...

    def ensure_collection(self) -> None:
        """Create the collection/table and its indexes if absent."""
        ...

    def upsert_points(self, points: list[IndexedPoint]) -> None:
        """Insert or overwrite points by id."""
        ...

    def get_points(self, ids: list[str]) -> dict[str, dict[str, Any]]:
        """Return payloads of the ids that exist."""
        ...

    def query(
        self,
        vector: np.ndarray,
        filter: dict[str, str] | None = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        """Filtered similarity query, ordered by descending score."""
        ...

    def health(self) -> bool:
        ...

    def stats(self) -> CollectionStats:
        ...

    def delete_by_prefix(self, document_id: str) -> int:
        """Remove every point of a document; return how many were removed."""
        ...

    def distinct_values(
        self,
        fields: tuple[str, ...],
        filter: dict[str, str] | None = None,
    ) -> set[tuple]:
        """Distinct combinations of payload fields over the matching points (None if absent)."""
        ...


# ---------------------------------------------------------------------------
# CACHE BACKEND PROTOCOL
# ---------------------------------------------------------------------------


@runtime_checkable
class CacheBackend(Protocol):
    """
    Contract for a TTL key-value store.

    Implementations:
    - InMemoryCacheBackend (process-local)
    Any store offering get/set-with-expiry/delete fits.
    """

    def get(self, key: str) -> Any | None:
        ...

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ...

    def delete(self, key: str) -> None:
        ...
