"""
Bounded retry with exponential backoff.

Used by the ingestion pipeline for embedding and upsert calls. The serving
path never retries: a failed lookup degrades to "no context" immediately.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from curriculum_retrieval.core.errors import ConnectivityError, EmbeddingError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[Exception], ...] = (EmbeddingError, ConnectivityError)


def retry_call(
    fn: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 0.5,
    retry_on: tuple[type[Exception], ...] = RETRYABLE_ERRORS,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "call",
) -> T:
    """
    Call fn until it succeeds or max_attempts is reached.

    The delay after failed attempt n (1-based) is base_delay * 2 ** (n - 1).
    Exceptions outside retry_on propagate immediately; the last retryable
    exception propagates once attempts are exhausted.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    def log_retry(retry_state: RetryCallState) -> None:
        logger.debug(
            f"{description} failed (attempt {retry_state.attempt_number}/{max_attempts}), "
            f"retrying in {retry_state.next_action.sleep:.2f}s: "
            f"{retry_state.outcome.exception()}"
        )

    retrying = Retrying(
        retry=retry_if_exception_type(retry_on),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, min=0),
        sleep=sleep,
        before_sleep=log_retry,
        reraise=True,
    )
    try:
        return retrying(fn)
    except retry_on as e:
        logger.warning(f"{description} failed after {max_attempts} attempts: {e}")
        raise
