"""
Composition root.

build_engine() creates the long-lived store and embedding clients once and
injects them into the retrieval service, the ingestion pipeline and the
curriculum catalog. Callers hold the returned RetrievalEngine for the life
of the process and call close() on shutdown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from curriculum_retrieval.cache import InMemoryCacheBackend, QueryCache
from curriculum_retrieval.catalog import CurriculumCatalog
from curriculum_retrieval.chunking import DocumentChunker
from curriculum_retrieval.config import Settings, get_settings
from curriculum_retrieval.core.errors import ConfigurationError
from curriculum_retrieval.core.protocols import CacheBackend, EmbeddingProvider, VectorStore
from curriculum_retrieval.embeddings import get_embedding_provider
from curriculum_retrieval.gate import AvailabilityGate
from curriculum_retrieval.ingestion import IngestionPipeline
from curriculum_retrieval.observability import get_tracer
from curriculum_retrieval.retrieval import RetrievalService
from curriculum_retrieval.store import get_vector_store

logger = logging.getLogger(__name__)


@dataclass
class RetrievalEngine:
    """Wired engine components sharing one store and one embedding client."""
    settings: Settings
    store: VectorStore
    embeddings: EmbeddingProvider
    cache: QueryCache | None
    gate: AvailabilityGate
    service: RetrievalService
    pipeline: IngestionPipeline
    catalog: CurriculumCatalog

    def close(self) -> None:
        self.gate.shutdown()
        self.store.close()
        logger.debug("Retrieval engine closed")


def build_engine(
    settings: Settings | None = None,
    store: VectorStore | None = None,
    embeddings: EmbeddingProvider | None = None,
    cache_backend: CacheBackend | None = None,
) -> RetrievalEngine:
    """
    Build the engine from settings, with optional injected collaborators.

    Raises:
        ConfigurationError: the embedding dimension does not match the
            collection's configured vector size
    """
    settings = settings or get_settings()
    store = store or get_vector_store(settings.store)
    embeddings = embeddings or get_embedding_provider(settings.embeddings)

    # A model/dimension mismatch does not fail at query time, it silently
    # returns garbage, so it is checked once here
    if embeddings.dimensions != settings.store.embedding_dim:
        raise ConfigurationError(
            f"Embedding provider produces {embeddings.dimensions}-dim vectors but the "
            f"collection expects {settings.store.embedding_dim}"
        )

    cache = None
    if settings.cache.enabled:
        cache = QueryCache(cache_backend or InMemoryCacheBackend(), settings.cache)

    tracer = get_tracer()
    gate = AvailabilityGate(store, settings.retrieval)
    service = RetrievalService(
        embeddings,
        store,
        settings.retrieval,
        cache=cache,
        gate=gate,
        tracer=tracer,
    )
    pipeline = IngestionPipeline(
        DocumentChunker(settings.chunking),
        embeddings,
        store,
        settings.ingestion,
        cache=cache,
        tracer=tracer,
        max_concurrent_embeddings=settings.embeddings.max_concurrent_calls,
    )
    catalog = CurriculumCatalog(store, settings.retrieval, cache=cache, gate=gate)

    logger.info(
        f"Engine ready: {settings.store.backend} store, "
        f"{embeddings.dimensions}-dim embeddings, cache {'on' if cache else 'off'}"
    )
    return RetrievalEngine(
        settings=settings,
        store=store,
        embeddings=embeddings,
        cache=cache,
        gate=gate,
        service=service,
        pipeline=pipeline,
        catalog=catalog,
    )
