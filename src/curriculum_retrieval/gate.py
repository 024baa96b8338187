"""
Availability gate for the serving path.

Retrieval runs inside chat and deck-generation requests, so no store or
provider failure may reach the caller. The gate turns every such failure into
an explicit outcome with a reason:

- check(): cached store health probe, bounded by a timeout
- run(fn, timeout_ms): executes one call on a shared thread pool and maps
  timeouts and typed errors to an UnavailableReason

A timed-out call keeps running in its worker thread; the caller stops
waiting for it and gets the degraded outcome.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from curriculum_retrieval.config import RetrievalConfig
from curriculum_retrieval.core.errors import (
    ConfigurationError,
    ConnectivityError,
    EmbeddingError,
    RetrievalEngineError,
)
from curriculum_retrieval.core.protocols import VectorStore

logger = logging.getLogger(__name__)


class UnavailableReason(str, Enum):
    """Why retrieval could not produce context."""
    NOT_CONFIGURED = "not_configured"
    STORE_UNHEALTHY = "store_unhealthy"
    TIMEOUT = "timeout"
    EMBEDDING_FAILED = "embedding_failed"
    STORE_FAILED = "store_failed"
    UNEXPECTED = "unexpected"


@dataclass
class Availability:
    available: bool
    reason: UnavailableReason | None = None


@dataclass
class GateOutcome:
    """Result of a gated call: a value, or the reason there is none."""
    ok: bool
    value: Any = None
    reason: UnavailableReason | None = None
    error: BaseException | None = None


def classify_error(error: BaseException) -> UnavailableReason:
    """Map an exception raised by a gated call to its reason."""
    if isinstance(error, FuturesTimeoutError):
        return UnavailableReason.TIMEOUT
    if isinstance(error, ConfigurationError):
        return UnavailableReason.NOT_CONFIGURED
    if isinstance(error, EmbeddingError):
        return UnavailableReason.EMBEDDING_FAILED
    if isinstance(error, (ConnectivityError, RetrievalEngineError)):
        return UnavailableReason.STORE_FAILED
    return UnavailableReason.UNEXPECTED


class AvailabilityGate:
    """Bounded, fail-soft execution of store and embedding calls."""

    def __init__(
        self,
        store: VectorStore,
        config: RetrievalConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_workers: int = 8,
    ):
        self.store = store
        self.config = config or RetrievalConfig()
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="retrieval-gate"
        )
        self._lock = threading.Lock()
        self._cached: tuple[Availability, float] | None = None

    def check(self) -> Availability:
        """Store availability, reusing a recent probe result."""
        with self._lock:
            if self._cached is not None:
                availability, checked_at = self._cached
                if self._clock() - checked_at < self.config.health_cache_seconds:
                    return availability

        outcome = self.run(self.store.health, self.config.health_timeout_ms)
        if not outcome.ok:
            availability = Availability(False, outcome.reason)
        elif outcome.value:
            availability = Availability(True)
        else:
            availability = Availability(False, UnavailableReason.STORE_UNHEALTHY)

        if not availability.available:
            logger.warning(f"Vector store unavailable: {availability.reason.value}")

        with self._lock:
            self._cached = (availability, self._clock())
        return availability

    def run(self, fn: Callable[[], Any], timeout_ms: int) -> GateOutcome:
        """Run fn with a timeout. Never raises."""
        try:
            future = self._executor.submit(fn)
            value = future.result(timeout=timeout_ms / 1000)
        except FuturesTimeoutError as e:
            future.cancel()
            logger.warning(f"Gated call timed out after {timeout_ms}ms")
            self.forget()
            return GateOutcome(ok=False, reason=UnavailableReason.TIMEOUT, error=e)
        except RetrievalEngineError as e:
            logger.warning(f"Gated call failed: {e}")
            self.forget()
            return GateOutcome(ok=False, reason=classify_error(e), error=e)
        except Exception as e:
            logger.exception(f"Unexpected error in gated call: {e}")
            self.forget()
            return GateOutcome(ok=False, reason=UnavailableReason.UNEXPECTED, error=e)
        return GateOutcome(ok=True, value=value)

    def forget(self) -> None:
        """Drop the cached health result so the next check probes again."""
        with self._lock:
            self._cached = None

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
