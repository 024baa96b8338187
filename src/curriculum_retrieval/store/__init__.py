"""
Store module - the vector database wrapper.

This module provides:
- VectorStoreConfig: Connection settings
- PgVectorStore: PostgreSQL + pgvector
- QdrantVectorStore: Qdrant
- InMemoryVectorStore: Testing/development store
- get_vector_store(): Factory function

ARCHITECTURE:
-------------
1. Protocol defines the contract (in core.protocols)
2. Multiple implementations, chosen by VECTOR_STORE_BACKEND
3. Factory function for instantiation
4. Test double for fast unit tests
"""

from __future__ import annotations

from curriculum_retrieval.config import VectorStoreConfig
from curriculum_retrieval.core.protocols import VectorStore
from curriculum_retrieval.store.memory_store import InMemoryVectorStore
from curriculum_retrieval.store.pgvector_store import PgVectorStore, PGVECTOR_AVAILABLE
from curriculum_retrieval.store.qdrant_store import QdrantVectorStore


def get_vector_store(config: VectorStoreConfig | None = None) -> VectorStore:
    """
    Factory function to get the configured vector store.

    Args:
        config: Store configuration (loaded from env if not provided)

    Returns:
        VectorStore implementation. Nothing is connected yet; connections
        open lazily on first use.
    """
    config = config or VectorStoreConfig.from_env()

    if config.backend == "postgres":
        return PgVectorStore(config)
    if config.backend == "qdrant":
        return QdrantVectorStore(config)
    return InMemoryVectorStore(config)


__all__ = [
    "VectorStoreConfig",
    "PgVectorStore",
    "PGVECTOR_AVAILABLE",
    "QdrantVectorStore",
    "InMemoryVectorStore",
    "get_vector_store",
]
