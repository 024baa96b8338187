"""
Curriculum discovery.

Lists what the indexed curriculum covers so a student can pick an existing
theme instead of typing free text: the levels present, the subjects of a
level, and the domains and themes (document titles) of a level and subject.

Listings are read from the stored payloads, so they always match what
retrieval can ground. Like search, every call is fail-soft: an unavailable
store yields an empty listing, which is never cached.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import asdict, dataclass, field
from typing import Any

from curriculum_retrieval.cache import QueryCache
from curriculum_retrieval.config import RetrievalConfig
from curriculum_retrieval.core.protocols import VectorStore
from curriculum_retrieval.documents import LEVEL_CYCLES
from curriculum_retrieval.gate import AvailabilityGate

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN = "Général"

# Display names and abbreviations that do not fold to the stored key
SUBJECT_ALIASES = {
    "maths": "mathematiques",
    "math": "mathematiques",
    "english": "anglais",
    "sciences de la vie et de la terre": "svt",
}

_SEPARATOR_RE = re.compile(r"[\s\-]+")


def fold(text: str) -> str:
    """Case- and accent-insensitive form of text."""
    folded = unicodedata.normalize("NFKD", text.casefold())
    return "".join(c for c in folded if not unicodedata.combining(c))


def canonical_subject(subject: str) -> str:
    """Stored subject key for a display name: 'Physique-Chimie' -> 'physique_chimie'."""
    folded = fold(subject).strip()
    return SUBJECT_ALIASES.get(folded, _SEPARATOR_RE.sub("_", folded))


def collation_key(text: str) -> tuple[str, str]:
    # Accents sort with their base letter, as French dictionaries do
    return fold(text), text


def _level_order(level: str) -> tuple[int, str]:
    order = list(LEVEL_CYCLES)
    return (order.index(level), level) if level in order else (len(order), level)


# ---------------------------------------------------------------------------
# RESULT TYPES
# ---------------------------------------------------------------------------


@dataclass
class DomainTopics:
    """A curriculum domain with the distinct themes indexed under it."""
    domain: str
    themes: list[str] = field(default_factory=list)


@dataclass
class TopicsResult:
    """Domains and themes available for one level and subject."""
    level: str
    subject: str
    domains: list[DomainTopics] = field(default_factory=list)
    cached: bool = False
    degraded_reason: str | None = None

    @property
    def total_topics(self) -> int:
        return sum(len(d.themes) for d in self.domains)

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "subject": self.subject,
            "domains": [asdict(d) for d in self.domains],
            "total_topics": self.total_topics,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TopicsResult":
        return cls(
            level=data["level"],
            subject=data["subject"],
            domains=[DomainTopics(d["domain"], list(d["themes"])) for d in data["domains"]],
        )


def group_topics(pairs: set[tuple]) -> list[DomainTopics]:
    """Group (domain, title) pairs by domain, both sorted; untitled points are ignored."""
    grouped: dict[str, set[str]] = {}
    for domain, title in pairs:
        if not title:
            continue
        grouped.setdefault(domain or DEFAULT_DOMAIN, set()).add(title)
    return [
        DomainTopics(domain, sorted(grouped[domain], key=collation_key))
        for domain in sorted(grouped, key=collation_key)
    ]


# ---------------------------------------------------------------------------
# CATALOG
# ---------------------------------------------------------------------------


class CurriculumCatalog:
    """Fail-soft listings of the indexed curriculum, cached with query results."""

    def __init__(
        self,
        store: VectorStore,
        config: RetrievalConfig | None = None,
        cache: QueryCache | None = None,
        gate: AvailabilityGate | None = None,
    ):
        self.store = store
        self.config = config or RetrievalConfig()
        self.cache = cache
        self.gate = gate or AvailabilityGate(store, self.config)

    def levels(self) -> list[str]:
        """Levels with at least one indexed chunk, in school order."""
        key = self._cache_key("levels")
        cached = self._cache_get(key)
        if cached is not None:
            return list(cached)

        values = self._distinct(("level",), None)
        if values is None:
            return []
        levels = sorted({v[0] for v in values if v[0]}, key=_level_order)
        self._cache_set(key, levels)
        return levels

    def subjects(self, level: str) -> list[str]:
        """Subjects indexed for a level, alphabetically."""
        level = level.strip().lower()
        key = self._cache_key("subjects", level)
        cached = self._cache_get(key)
        if cached is not None:
            return list(cached)

        values = self._distinct(("subject",), {"level": level})
        if values is None:
            return []
        subjects = sorted({v[0] for v in values if v[0]}, key=collation_key)
        self._cache_set(key, subjects)
        return subjects

    def topics(self, level: str, subject: str) -> TopicsResult:
        """Domains and themes for a level and subject. Never raises."""
        level = level.strip().lower()
        subject = canonical_subject(subject)
        key = self._cache_key("topics", level, subject)
        cached = self._cache_get(key)
        if cached is not None:
            result = TopicsResult.from_dict(cached)
            result.cached = True
            return result

        availability = self.gate.check()
        if not availability.available:
            return TopicsResult(level, subject, degraded_reason=availability.reason.value)

        outcome = self.gate.run(
            lambda: self.store.distinct_values(
                ("domain", "title"), {"level": level, "subject": subject}
            ),
            self.config.catalog_timeout_ms,
        )
        if not outcome.ok:
            return TopicsResult(level, subject, degraded_reason=outcome.reason.value)

        result = TopicsResult(level, subject, group_topics(outcome.value))
        logger.info(
            f"Topics for {level}/{subject}: {len(result.domains)} domains, "
            f"{result.total_topics} themes"
        )
        self._cache_set(key, result.to_dict())
        return result

    # -----------------------------------------------------------------------
    # HELPERS
    # -----------------------------------------------------------------------

    def _distinct(self, fields: tuple[str, ...], filter: dict[str, str] | None) -> set[tuple] | None:
        if not self.gate.check().available:
            return None
        outcome = self.gate.run(
            lambda: self.store.distinct_values(fields, filter),
            self.config.catalog_timeout_ms,
        )
        return outcome.value if outcome.ok else None

    def _cache_key(self, kind: str, *parts: str) -> str | None:
        if self.cache is None:
            return None
        try:
            return self.cache.catalog_key(kind, *parts)
        except Exception as e:
            logger.warning(f"Cache unavailable, listing without it: {e}")
            return None

    def _cache_get(self, key: str | None) -> Any | None:
        if key is None:
            return None
        try:
            return self.cache.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed, treating as miss: {e}")
            return None

    def _cache_set(self, key: str | None, value: Any) -> None:
        if key is None:
            return
        try:
            self.cache.set(key, value)
        except Exception as e:
            logger.warning(f"Cache write failed: {e}")
