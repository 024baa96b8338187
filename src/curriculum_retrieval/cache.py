"""
Query cache for retrieval results.

Repeated questions on the same level and subject are common in tutoring
sessions, and each miss costs an embedding call plus a vector search. The
cache keys a search on its normalized inputs and keeps the result for a TTL
(one hour by default).

Invalidation: query keys are unbounded, so entries are never enumerated.
Every key embeds a generation stamp stored in the backend itself (without a
TTL). invalidate_all() replaces the stamp with a fresh random one after a
reindex, which makes all earlier entries unreachable; they then expire on
their own. Stamps are never reused. Processes sharing a backend see the new
stamp on their next lookup.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
import unicodedata
import uuid
from typing import Any, Callable

from curriculum_retrieval.config import CacheConfig

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


class InMemoryCacheBackend:
    """
    Process-local TTL key-value store.

    Thread-safe; expired entries are dropped lazily on read and when
    max_entries is exceeded. Entries without a TTL are never evicted.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_entries: int = 10_000):
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[str, tuple[Any, float | None]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        expires_at = None if ttl_seconds is None else self._clock() + ttl_seconds
        with self._lock:
            self._entries[key] = (value, expires_at)
            if len(self._entries) > self._max_entries:
                self._evict()

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def _evict(self) -> None:
        now = self._clock()
        expired = [k for k, (_, exp) in self._entries.items() if exp is not None and exp <= now]
        for key in expired:
            del self._entries[key]
        # Still full: drop oldest expiring insertions first
        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return
        evictable = [k for k, (_, exp) in self._entries.items() if exp is not None]
        for key in evictable[:overflow]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


def normalize_query(text: str) -> str:
    """NFC, case-folded, whitespace-collapsed query text."""
    text = unicodedata.normalize("NFC", text).casefold()
    return _WHITESPACE_RE.sub(" ", text).strip()


class QueryCache:
    """Cache layer keyed by normalized (query, level, subject, limit, min_score)."""

    def __init__(self, backend: Any, config: CacheConfig | None = None):
        self.backend = backend
        self.config = config or CacheConfig()
        self._generation_key = f"{self.config.key_prefix}generation"

    def generation(self) -> str:
        return str(self.backend.get(self._generation_key) or "0")

    def make_key(
        self,
        query: str,
        level: str,
        subject: str,
        limit: int,
        min_score: float,
    ) -> str:
        raw = "|".join(
            [
                normalize_query(query),
                level.strip().lower(),
                subject.strip().lower(),
                str(limit),
                f"{min_score:.4f}",
            ]
        )
        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]
        return f"{self.config.key_prefix}g{self.generation()}:{digest}"

    def catalog_key(self, kind: str, *parts: str) -> str:
        """Key for a curriculum listing; shares the generation with query keys."""
        normalized = ":".join(p.strip().lower() for p in parts)
        return f"{self.config.key_prefix}g{self.generation()}:{kind}:{normalized}"

    def get(self, key: str) -> Any | None:
        if not self.config.enabled:
            return None
        return self.backend.get(key)

    def set(self, key: str, value: Any) -> None:
        if not self.config.enabled:
            return
        self.backend.set(key, value, ttl_seconds=self.config.ttl_seconds)

    def invalidate(self, key: str) -> None:
        self.backend.delete(key)

    def invalidate_all(self) -> str:
        """Make every existing entry unreachable; return the new generation."""
        generation = uuid.uuid4().hex[:16]
        self.backend.set(self._generation_key, generation, ttl_seconds=None)
        logger.info(f"Query cache invalidated (generation {generation})")
        return generation
