"""
Core module - shared protocols, records and errors for the engine.

USAGE:
------
from curriculum_retrieval.core import VectorStore, EmbeddingProvider

class MyVectorStore:
    '''Implements VectorStore protocol.'''
    ...
"""

from curriculum_retrieval.core.protocols import (
    # Protocols
    EmbeddingProvider,
    VectorStore,
    CacheBackend,
    # Data classes
    IndexedPoint,
    SearchResult,
    CollectionStats,
)
from curriculum_retrieval.core.errors import (
    RetrievalEngineError,
    ConfigurationError,
    ConnectivityError,
    EmbeddingError,
    ValidationError,
)
from curriculum_retrieval.core.retry import retry_call

__all__ = [
    # Protocols
    "EmbeddingProvider",
    "VectorStore",
    "CacheBackend",
    # Data classes
    "IndexedPoint",
    "SearchResult",
    "CollectionStats",
    # Errors
    "RetrievalEngineError",
    "ConfigurationError",
    "ConnectivityError",
    "EmbeddingError",
    "ValidationError",
    # Helpers
    "retry_call",
]
