"""
Observability Module - Phoenix + OpenTelemetry Integration

Traces retrieval requests and ingestion runs using Arize Phoenix, with
OpenInference auto-instrumentation for embedding calls.

USAGE:
------
# At application startup:
from curriculum_retrieval.observability import init_phoenix

init_phoenix()  # Starts local Phoenix UI if PHOENIX_ENABLED=true

# In code that needs tracing:
from curriculum_retrieval.observability import get_tracer

tracer = get_tracer()
with tracer.start_span("retrieval.search", attributes={"rag.limit": 5}) as span:
    # ... do work ...
    span.set_attribute("rag.result.found", True)
"""

from __future__ import annotations

import logging

from curriculum_retrieval.observability.config import (
    PhoenixConfig,
    get_config,
    reset_config,
)
from curriculum_retrieval.observability.tracer import (
    TracerProtocol,
    SpanProtocol,
    NoOpTracer,
    NoOpSpan,
    get_tracer,
    reset_tracer,
)
from curriculum_retrieval.observability.attributes import (
    RAG_CACHE_HIT,
    RAG_DEGRADED_REASON,
    RAG_QUERY_TEXT,
    search_attributes,
    search_result_attributes,
    ingestion_report_attributes,
)

logger = logging.getLogger(__name__)

_phoenix_initialized = False


def init_phoenix(config: PhoenixConfig | None = None) -> bool:
    """
    Initialize Phoenix observability.

    This should be called once at application startup.
    Sets up OpenTelemetry tracer provider and registers auto-instrumentors.

    Args:
        config: Optional config (uses env vars if not provided)

    Returns:
        True if Phoenix was initialized, False if disabled or failed
    """
    global _phoenix_initialized
    if _phoenix_initialized:
        return True

    config = config or get_config()

    if not config.enabled:
        logger.debug("Phoenix observability disabled")
        return False

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        if config.collector_endpoint:
            # Remote Phoenix instance
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
            exporter = OTLPSpanExporter(endpoint=config.collector_endpoint)
            logger.info(f"Phoenix connecting to remote: {config.collector_endpoint}")
        else:
            # Local Phoenix app on its default OTLP port
            import phoenix as px
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
            session = px.launch_app()
            exporter = OTLPSpanExporter(endpoint=f"{session.url.rstrip('/')}/v1/traces")
            logger.info(f"Phoenix UI available at: {session.url}")

        provider = TracerProvider(
            resource=Resource.create({"openinference.project.name": config.project_name})
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)

        from curriculum_retrieval.observability.instrumentation import register_instrumentors
        register_instrumentors()

        # Spans requested before init got a no-op tracer
        reset_tracer()
        _phoenix_initialized = True
        return True

    except ImportError as e:
        logger.warning(f"Phoenix not installed, observability disabled: {e}")
        return False
    except Exception as e:
        logger.error(f"Failed to initialize Phoenix: {e}")
        return False


def shutdown_phoenix() -> None:
    """Shutdown Phoenix and cleanup resources."""
    global _phoenix_initialized

    if not _phoenix_initialized:
        return

    try:
        from opentelemetry import trace
        provider = trace.get_tracer_provider()
        if hasattr(provider, "shutdown"):
            provider.shutdown()
    except Exception as e:
        logger.warning(f"Error shutting down Phoenix: {e}")

    reset_tracer()
    reset_config()
    _phoenix_initialized = False


__all__ = [
    # Initialization
    "init_phoenix",
    "shutdown_phoenix",
    # Config
    "PhoenixConfig",
    "get_config",
    "reset_config",
    # Tracer
    "TracerProtocol",
    "SpanProtocol",
    "NoOpTracer",
    "NoOpSpan",
    "get_tracer",
    "reset_tracer",
    # Attributes
    "RAG_CACHE_HIT",
    "RAG_DEGRADED_REASON",
    "RAG_QUERY_TEXT",
    "search_attributes",
    "search_result_attributes",
    "ingestion_report_attributes",
]
