"""
Span factory for retrieval and ingestion.

get_tracer() resolves once per process: an OpenTelemetry-backed tracer when
Phoenix is enabled and init_phoenix() has installed an SDK provider,
otherwise a NoOpTracer. Callers only ever use start_span() as a context
manager, set_attribute() and set_status().
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Protocol

DEFAULT_SERVICE_NAME = "curriculum-retrieval"


class SpanProtocol(Protocol):
    def set_attribute(self, key: str, value: Any) -> None:
        ...

    def set_status(self, status: str, description: str | None = None) -> None:
        """status is "ok" or "error"."""
        ...


class TracerProtocol(Protocol):
    def start_span(self, name: str, attributes: dict[str, Any] | None = None) -> Any:
        """Context manager yielding a SpanProtocol."""
        ...


def _present(attributes: dict[str, Any] | None) -> dict[str, Any]:
    # OTel rejects None values; degraded_reason and friends are often unset
    return {k: v for k, v in (attributes or {}).items() if v is not None}


class NoOpSpan:
    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def set_status(self, status: str, description: str | None = None) -> None:
        pass


class NoOpTracer:
    """Used when tracing is off or the observability extra is not installed."""

    @contextmanager
    def start_span(self, name: str, attributes: dict[str, Any] | None = None) -> Iterator[NoOpSpan]:
        yield NoOpSpan()


class OTelSpan:
    def __init__(self, span: Any):
        self._span = span

    def set_attribute(self, key: str, value: Any) -> None:
        if value is not None:
            self._span.set_attribute(key, value)

    def set_status(self, status: str, description: str | None = None) -> None:
        from opentelemetry.trace import StatusCode

        self._span.set_status(StatusCode.OK if status == "ok" else StatusCode.ERROR, description)


class OTelTracer:
    def __init__(self, tracer: Any):
        self._tracer = tracer

    @contextmanager
    def start_span(self, name: str, attributes: dict[str, Any] | None = None) -> Iterator[OTelSpan]:
        with self._tracer.start_as_current_span(name, attributes=_present(attributes)) as span:
            yield OTelSpan(span)


_tracer: TracerProtocol | None = None


def _resolve(service_name: str) -> TracerProtocol:
    from curriculum_retrieval.observability.config import get_config

    if not get_config().enabled:
        return NoOpTracer()
    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
    except ImportError:
        return NoOpTracer()

    # Before init_phoenix() the global provider is OTel's proxy, not the SDK's
    if not isinstance(trace.get_tracer_provider(), TracerProvider):
        return NoOpTracer()
    return OTelTracer(trace.get_tracer(service_name))


def get_tracer(service_name: str = DEFAULT_SERVICE_NAME) -> TracerProtocol:
    """Process-wide tracer; service_name only matters on the first call."""
    global _tracer
    if _tracer is None:
        _tracer = _resolve(service_name)
    return _tracer


def reset_tracer() -> None:
    """Forget the resolved tracer so the next get_tracer() re-checks config."""
    global _tracer
    _tracer = None
