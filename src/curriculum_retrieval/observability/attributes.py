"""
Semantic Conventions for Span Attributes

Attribute keys for retrieval and ingestion spans, under a custom rag.*
namespace, plus the OpenTelemetry GenAI model key.

Reference: https://opentelemetry.io/docs/specs/semconv/gen-ai/
"""

from __future__ import annotations

from typing import Any

# ---------------------------------------------------------------------------
# GENAI NAMESPACE (OTel standard)
# ---------------------------------------------------------------------------

GEN_AI_REQUEST_MODEL = "gen_ai.request.model"  # embedding model of an ingestion run


# ---------------------------------------------------------------------------
# RAG NAMESPACE (custom)
# ---------------------------------------------------------------------------

# Query
RAG_LEVEL = "rag.filter.level"  # "cinquieme"
RAG_SUBJECT = "rag.filter.subject"  # "mathematiques"
RAG_LIMIT = "rag.limit"
RAG_MIN_SCORE = "rag.min_score"
RAG_QUERY_TEXT = "rag.query.text"  # only with PHOENIX_CAPTURE_CONTENT=true

# Result
RAG_FOUND = "rag.result.found"
RAG_CHUNK_COUNT = "rag.result.chunk_count"
RAG_AVERAGE_SCORE = "rag.result.average_score"
RAG_BEST_SCORE = "rag.result.best_score"
RAG_CONTEXT_CHARS = "rag.result.context_chars"
RAG_CACHE_HIT = "rag.cache.hit"
RAG_DEGRADED_REASON = "rag.degraded_reason"  # "timeout", "store_unhealthy", ...

# Ingestion
RAG_INGEST_DOCUMENTS = "rag.ingest.documents"
RAG_INGEST_DOCUMENT_ID = "rag.ingest.document_id"
RAG_INGEST_CHUNKS = "rag.ingest.chunks"
RAG_INGEST_INSERTED = "rag.ingest.inserted"
RAG_INGEST_UPDATED = "rag.ingest.updated"
RAG_INGEST_SKIPPED = "rag.ingest.skipped"
RAG_INGEST_ERRORS = "rag.ingest.errors"
RAG_INGEST_DRY_RUN = "rag.ingest.dry_run"


# ---------------------------------------------------------------------------
# HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def search_attributes(level: str, subject: str, limit: int, min_score: float) -> dict:
    """Create attributes dict for a retrieval.search span."""
    return {
        RAG_LEVEL: level,
        RAG_SUBJECT: subject,
        RAG_LIMIT: limit,
        RAG_MIN_SCORE: min_score,
    }


def search_result_attributes(response: Any) -> dict:
    """Attributes describing a SearchResponse."""
    return {
        RAG_FOUND: response.found,
        RAG_CHUNK_COUNT: len(response.chunks),
        RAG_AVERAGE_SCORE: response.average_score,
        RAG_BEST_SCORE: response.best_score,
        RAG_CONTEXT_CHARS: len(response.context),
    }


def ingestion_report_attributes(report: Any) -> dict:
    """Attributes describing an IngestionReport."""
    return {
        RAG_INGEST_DOCUMENTS: report.documents_processed,
        RAG_INGEST_CHUNKS: report.chunks_created,
        RAG_INGEST_INSERTED: report.inserted,
        RAG_INGEST_UPDATED: report.updated,
        RAG_INGEST_SKIPPED: report.skipped,
        RAG_INGEST_ERRORS: len(report.errors),
    }
