"""
Query-time retrieval.

RetrievalService grounds tutoring responses in curriculum passages. Per
request:

    CACHE_CHECK -> hit: return
                -> miss: AVAILABILITY_CHECK -> unavailable: return empty
                                            -> EMBED -> SEARCH -> FILTER
                                               -> FORMAT -> CACHE_WRITE -> return

Every path returns a SearchResponse. Failures are mapped by the availability
gate to a degraded response whose degraded_reason says what went wrong;
callers only look at found/context.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from curriculum_retrieval.cache import QueryCache, normalize_query
from curriculum_retrieval.config import RetrievalConfig
from curriculum_retrieval.core.protocols import EmbeddingProvider, SearchResult, VectorStore
from curriculum_retrieval.documents import SearchQuery
from curriculum_retrieval.gate import AvailabilityGate, UnavailableReason
from curriculum_retrieval.observability.attributes import (
    RAG_CACHE_HIT,
    RAG_DEGRADED_REASON,
    RAG_QUERY_TEXT,
    search_attributes,
    search_result_attributes,
)
from curriculum_retrieval.observability.config import get_config as get_observability_config
from curriculum_retrieval.observability.tracer import TracerProtocol, get_tracer

logger = logging.getLogger(__name__)

CONTEXT_SEPARATOR = "\n\n---\n\n"
ELLIPSIS = "…"

_SENTENCE_END_RE = re.compile(r"[.!?…](?=\s|$)")


# ---------------------------------------------------------------------------
# RESULT TYPES
# ---------------------------------------------------------------------------


@dataclass
class RetrievedChunk:
    """A passage returned to the caller."""
    id: str
    score: float
    content: str
    title: str
    domain: str | None = None
    subdomain: str | None = None

    @classmethod
    def from_result(cls, result: SearchResult) -> "RetrievedChunk":
        payload = result.payload
        return cls(
            id=result.id,
            score=result.score,
            content=payload.get("content", ""),
            title=payload.get("title") or payload.get("document_id", ""),
            domain=payload.get("domain"),
            subdomain=payload.get("subdomain"),
        )


@dataclass
class SearchResponse:
    """
    Retrieval result.

    degraded_reason is set when the engine could not search (store down,
    timeout, provider failure). It is internal: to_dict() omits it unless
    asked, and degraded responses are never cached.
    """
    found: bool
    context: str
    chunks: list[RetrievedChunk] = field(default_factory=list)
    average_score: float = 0.0
    search_time_ms: int = 0
    cached: bool = False
    degraded_reason: str | None = None

    @classmethod
    def empty(cls, degraded_reason: str | None = None) -> "SearchResponse":
        return cls(found=False, context="", chunks=[], degraded_reason=degraded_reason)

    @property
    def best_score(self) -> float:
        return max((c.score for c in self.chunks), default=0.0)

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None

    def to_dict(self, internal: bool = False) -> dict[str, Any]:
        data = {
            "found": self.found,
            "context": self.context,
            "chunks": [asdict(c) for c in self.chunks],
            "average_score": self.average_score,
            "search_time_ms": self.search_time_ms,
            "cached": self.cached,
        }
        if internal:
            data["degraded_reason"] = self.degraded_reason
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchResponse":
        return cls(
            found=data["found"],
            context=data["context"],
            chunks=[RetrievedChunk(**c) for c in data.get("chunks", [])],
            average_score=data.get("average_score", 0.0),
            search_time_ms=data.get("search_time_ms", 0),
            cached=data.get("cached", False),
            degraded_reason=data.get("degraded_reason"),
        )


# ---------------------------------------------------------------------------
# CONTEXT ASSEMBLY
# ---------------------------------------------------------------------------


def format_entry(number: int, chunk: RetrievedChunk, level: str, subject: str) -> str:
    return f"[{number}] {chunk.title} ({level} - {subject})\n{chunk.content}"


def truncate_context(text: str, max_chars: int) -> str:
    """
    Cap text at max_chars.

    Cuts after the last sentence terminal that fits. When none fits, cuts at
    the last word boundary and appends an ellipsis. Never cuts mid-word.
    """
    if len(text) <= max_chars:
        return text

    window = text[:max_chars]
    terminals = [m for m in _SENTENCE_END_RE.finditer(text) if m.end() <= max_chars]
    if terminals:
        return window[:terminals[-1].end()].rstrip()

    budget = max_chars - len(ELLIPSIS)
    if budget <= 0:
        return ""
    head = text[:budget + 1]
    space = max(head.rfind(" "), head.rfind("\n"))
    if space <= 0:
        return ""
    return text[:space].rstrip() + ELLIPSIS


def build_context(
    chunks: list[RetrievedChunk],
    level: str,
    subject: str,
    max_chars: int = 4000,
) -> str:
    """Numbered, separated passages capped at max_chars."""
    entries = [format_entry(i, chunk, level, subject) for i, chunk in enumerate(chunks, 1)]
    return truncate_context(CONTEXT_SEPARATOR.join(entries), max_chars)


# ---------------------------------------------------------------------------
# SERVICE
# ---------------------------------------------------------------------------


class RetrievalService:
    """
    Embeds a query, searches one (level, subject) slice of the corpus and
    assembles a bounded context string.
    """

    def __init__(
        self,
        embeddings: EmbeddingProvider,
        store: VectorStore,
        config: RetrievalConfig | None = None,
        cache: QueryCache | None = None,
        gate: AvailabilityGate | None = None,
        tracer: TracerProtocol | None = None,
    ):
        self.embeddings = embeddings
        self.store = store
        self.config = config or RetrievalConfig()
        self.cache = cache
        self.gate = gate or AvailabilityGate(store, self.config)
        self.tracer = tracer or get_tracer()

    @property
    def thresholds(self):
        return self.config.thresholds

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.config.default_limit
        return max(1, min(int(limit), self.config.max_limit))

    def search(
        self,
        query: str,
        level: str,
        subject: str,
        limit: int | None = None,
        min_score: float | None = None,
    ) -> SearchResponse:
        """Search for passages. Never raises."""
        started = time.perf_counter()
        limit = self.clamp_limit(limit)
        if min_score is None:
            min_score = self.thresholds.min_score

        attributes = search_attributes(level, subject, limit, min_score)
        if get_observability_config().capture_content:
            attributes[RAG_QUERY_TEXT] = query

        with self.tracer.start_span("retrieval.search", attributes=attributes) as span:
            try:
                response = self._search(query, level, subject, limit, min_score)
            except Exception as e:
                logger.exception(f"Retrieval failed unexpectedly: {e}")
                response = SearchResponse.empty(UnavailableReason.UNEXPECTED.value)

            response.search_time_ms = int((time.perf_counter() - started) * 1000)

            span.set_attribute(RAG_CACHE_HIT, response.cached)
            for key, value in search_result_attributes(response).items():
                span.set_attribute(key, value)
            if response.degraded:
                span.set_attribute(RAG_DEGRADED_REASON, response.degraded_reason)
                span.set_status("error", response.degraded_reason)

        logger.debug(
            f"Search {level}/{subject}: {len(response.chunks)} chunks, "
            f"avg {response.average_score:.3f}, {response.search_time_ms}ms"
            + (" (cached)" if response.cached else "")
        )
        return response

    def search_query(self, query: SearchQuery) -> SearchResponse:
        """Search from validated caller input."""
        return self.search(
            query.text,
            level=query.level,
            subject=query.subject,
            limit=query.limit,
            min_score=query.min_score_override,
        )

    def is_well_covered(self, response: SearchResponse) -> bool:
        """True when the topic is covered well enough to ground generated content."""
        return response.found and response.average_score >= self.thresholds.good_score

    def confidence(self, response: SearchResponse) -> str:
        return self.thresholds.classify(response.average_score if response.found else 0.0)

    # -----------------------------------------------------------------------
    # PIPELINE
    # -----------------------------------------------------------------------

    def _search(
        self, query: str, level: str, subject: str, limit: int, min_score: float
    ) -> SearchResponse:
        if not normalize_query(query):
            return SearchResponse.empty()

        key = self._cache_key(query, level, subject, limit, min_score)
        if key is not None:
            hit = self._cache_get(key)
            if hit is not None:
                response = SearchResponse.from_dict(hit)
                response.cached = True
                return response

        availability = self.gate.check()
        if not availability.available:
            return SearchResponse.empty(availability.reason.value)

        embedded = self.gate.run(
            lambda: self.embeddings.embed(query), self.config.embedding_timeout_ms
        )
        if not embedded.ok:
            return SearchResponse.empty(embedded.reason.value)

        fetch_limit = max(limit, self.config.overfetch_limit)
        searched = self.gate.run(
            lambda: self.store.query(
                embedded.value, {"level": level, "subject": subject}, fetch_limit
            ),
            self.config.store_timeout_ms,
        )
        if not searched.ok:
            return SearchResponse.empty(searched.reason.value)

        kept = sorted(
            (r for r in searched.value if r.score >= min_score),
            key=lambda r: r.score,
            reverse=True,
        )[:limit]
        chunks = [RetrievedChunk.from_result(r) for r in kept]

        response = SearchResponse(
            found=bool(chunks),
            context=build_context(chunks, level, subject, self.config.max_context_chars),
            chunks=chunks,
            average_score=(
                round(sum(c.score for c in chunks) / len(chunks), 4) if chunks else 0.0
            ),
        )

        if key is not None:
            self._cache_set(key, response)
        return response

    def _cache_key(self, *parts: Any) -> str | None:
        if self.cache is None:
            return None
        try:
            return self.cache.make_key(*parts)
        except Exception as e:
            logger.warning(f"Cache unavailable, searching without it: {e}")
            return None

    def _cache_get(self, key: str) -> dict | None:
        try:
            return self.cache.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed, treating as miss: {e}")
            return None

    def _cache_set(self, key: str, response: SearchResponse) -> None:
        try:
            self.cache.set(key, response.to_dict(internal=True))
        except Exception as e:
            logger.warning(f"Cache write failed: {e}")
