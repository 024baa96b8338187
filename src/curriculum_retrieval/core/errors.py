"""
Error taxonomy for the retrieval engine.

Every failure the engine knows how to classify is one of four kinds:

- ConfigurationError: connection settings are missing or inconsistent.
  Fatal when the ingestion tool starts; "unavailable" on the serving path.
- ConnectivityError: the vector store could not be reached or rejected a call.
  Retried during ingestion, fail-soft during retrieval.
- EmbeddingError: the embedding provider failed, timed out, or returned a
  vector of the wrong dimension.
- ValidationError: a document or payload is malformed. Rejected at the
  ingestion boundary and recorded in the report.

Callers decide between fail-soft and fail-hard; the store and embedding
wrappers only ever raise these typed errors.
"""

from __future__ import annotations


class RetrievalEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(RetrievalEngineError):
    """Missing or invalid configuration."""


class ConnectivityError(RetrievalEngineError):
    """Vector store unreachable or returned an error."""


class EmbeddingError(RetrievalEngineError):
    """Embedding provider error, timeout, or dimension mismatch."""


class ValidationError(RetrievalEngineError):
    """Malformed document, chunk, or point."""

    def __init__(self, message: str, document_id: str | None = None):
        super().__init__(message)
        self.document_id = document_id
