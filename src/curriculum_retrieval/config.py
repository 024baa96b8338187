"""
Engine configuration.

Loads settings from environment variables into small dataclasses, one per
component. Every section has a from_env() classmethod; get_settings() builds
and caches the whole tree lazily.

Environment Variables:
    VECTOR_STORE_BACKEND: memory | postgres | qdrant (default: memory)
    DATABASE_URL: PostgreSQL connection string (postgres backend)
    QDRANT_URL / QDRANT_API_KEY: Qdrant connection (qdrant backend)
    QDRANT_COLLECTION: Collection / table name (default: curriculum_chunks)
    EMBEDDING_MODEL / EMBEDDING_DIM: Embedding space (default: text-embedding-3-small / 1536)
    EMBEDDING_BASE_URL: OpenAI-compatible endpoint override
    USE_MOCK_EMBEDDINGS: Deterministic offline embeddings (default: false)
    RAG_*: Retrieval thresholds, limits, timeouts and cache settings
    CHUNK_*: Chunk size bounds and overlap
    INGEST_*: Ingestion parallelism, batching and retries
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from curriculum_retrieval.core.errors import ConfigurationError

_TRUE_VALUES = ("true", "1", "yes")


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from e


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from e


# ---------------------------------------------------------------------------
# VECTOR STORE
# ---------------------------------------------------------------------------

VECTOR_STORE_BACKENDS = ("memory", "postgres", "qdrant")


@dataclass
class VectorStoreConfig:
    """Connection settings for the vector store."""

    backend: str = "memory"
    connection_string: str | None = None
    url: str | None = None
    api_key: str | None = None
    collection_name: str = "curriculum_chunks"
    embedding_dim: int = 1536
    timeout_seconds: float = 30.0
    index_type: str = "hnsw"

    def __post_init__(self) -> None:
        if self.backend not in VECTOR_STORE_BACKENDS:
            raise ConfigurationError(
                f"Unknown vector store backend {self.backend!r}, "
                f"expected one of {', '.join(VECTOR_STORE_BACKENDS)}"
            )
        if self.embedding_dim <= 0:
            raise ConfigurationError("embedding_dim must be positive")

    @classmethod
    def from_env(cls) -> "VectorStoreConfig":
        return cls(
            backend=(_env_str("VECTOR_STORE_BACKEND", "memory") or "memory").lower(),
            connection_string=_env_str("DATABASE_URL"),
            url=_env_str("QDRANT_URL"),
            api_key=_env_str("QDRANT_API_KEY"),
            # QDRANT_COLLECTION_NAME is the older spelling
            collection_name=_env_str("QDRANT_COLLECTION")
            or _env_str("QDRANT_COLLECTION_NAME", "curriculum_chunks"),
            embedding_dim=_env_int("EMBEDDING_DIM", 1536),
            timeout_seconds=_env_float("VECTOR_STORE_TIMEOUT_SECONDS", 30.0),
        )


# ---------------------------------------------------------------------------
# EMBEDDINGS
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingConfig:
    """Embedding provider settings."""

    use_mock: bool = False
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    api_key: str | None = None
    base_url: str | None = None
    timeout_seconds: float = 30.0
    # Simultaneous calls the provider tolerates; ingestion uses 75% of it
    concurrency_budget: int = 8

    @property
    def max_concurrent_calls(self) -> int:
        return max(1, int(self.concurrency_budget * 0.75))

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        return cls(
            use_mock=_env_bool("USE_MOCK_EMBEDDINGS", False),
            model=_env_str("EMBEDDING_MODEL", "text-embedding-3-small"),
            dimensions=_env_int("EMBEDDING_DIM", 1536),
            api_key=_env_str("EMBEDDING_API_KEY") or _env_str("OPENAI_API_KEY"),
            base_url=_env_str("EMBEDDING_BASE_URL"),
            timeout_seconds=_env_float("EMBEDDING_TIMEOUT_SECONDS", 30.0),
            concurrency_budget=_env_int("EMBEDDING_CONCURRENCY_BUDGET", 8),
        )


# ---------------------------------------------------------------------------
# CHUNKING
# ---------------------------------------------------------------------------


@dataclass
class ChunkingConfig:
    """
    Chunk size bounds in characters.

    Defaults approximate 100-512 tokens at ~4 characters per token, with a
    15% overlap between consecutive chunks.
    """

    min_chars: int = 400
    max_chars: int = 2000
    overlap: float = 0.15

    def __post_init__(self) -> None:
        if self.min_chars < 1 or self.max_chars < 1:
            raise ConfigurationError("chunk bounds must be positive")
        if 2 * self.min_chars > self.max_chars:
            raise ConfigurationError(
                f"max_chars ({self.max_chars}) must be at least twice "
                f"min_chars ({self.min_chars})"
            )
        if not 0.0 <= self.overlap < 0.5:
            raise ConfigurationError("overlap must be in [0, 0.5)")

    @property
    def overlap_chars(self) -> int:
        return int(self.max_chars * self.overlap)

    @classmethod
    def from_env(cls) -> "ChunkingConfig":
        return cls(
            min_chars=_env_int("CHUNK_MIN_CHARS", 400),
            max_chars=_env_int("CHUNK_MAX_CHARS", 2000),
            overlap=_env_float("CHUNK_OVERLAP", 0.15),
        )


# ---------------------------------------------------------------------------
# RETRIEVAL
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScoreThresholds:
    """
    Cosine score tiers consumed by other features.

    min_score:  inclusion floor, lower-scored chunks are discarded
    good_score: topic well covered, below it callers should decline to
                generate grounded content or ask for clarification
    high_score: excellent match, used for confidence display
    """

    min_score: float = 0.35
    good_score: float = 0.5
    high_score: float = 0.7

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_score < self.good_score < self.high_score <= 1.0:
            raise ConfigurationError(
                "score thresholds must satisfy 0 <= min_score < good_score < high_score <= 1, "
                f"got {self.min_score}, {self.good_score}, {self.high_score}"
            )

    def classify(self, score: float) -> str:
        """Map a score to its tier: high, good, low, or none."""
        if score >= self.high_score:
            return "high"
        if score >= self.good_score:
            return "good"
        if score >= self.min_score:
            return "low"
        return "none"

    def to_dict(self) -> dict:
        return {
            "min_score": self.min_score,
            "good_score": self.good_score,
            "high_score": self.high_score,
        }


@dataclass
class RetrievalConfig:
    """Query-time settings."""

    thresholds: ScoreThresholds = field(default_factory=ScoreThresholds)
    default_limit: int = 5
    max_limit: int = 10
    overfetch_limit: int = 20
    max_context_chars: int = 4000
    store_timeout_ms: int = 500
    embedding_timeout_ms: int = 2000
    health_timeout_ms: int = 300
    health_cache_seconds: float = 30.0
    catalog_timeout_ms: int = 2000

    def __post_init__(self) -> None:
        if not 1 <= self.default_limit <= self.max_limit:
            raise ConfigurationError("default_limit must be in [1, max_limit]")
        if self.max_context_chars < 1:
            raise ConfigurationError("max_context_chars must be positive")

    @classmethod
    def from_env(cls) -> "RetrievalConfig":
        return cls(
            thresholds=ScoreThresholds(
                min_score=_env_float("RAG_MIN_SCORE", 0.35),
                good_score=_env_float("RAG_GOOD_SCORE", 0.5),
                high_score=_env_float("RAG_HIGH_SCORE", 0.7),
            ),
            default_limit=_env_int("RAG_DEFAULT_LIMIT", 5),
            max_limit=_env_int("RAG_MAX_LIMIT", 10),
            overfetch_limit=_env_int("RAG_OVERFETCH_LIMIT", 20),
            max_context_chars=_env_int("RAG_CONTEXT_MAX_LENGTH", 4000),
            store_timeout_ms=_env_int("RAG_STORE_TIMEOUT_MS", 500),
            embedding_timeout_ms=_env_int("RAG_EMBEDDING_TIMEOUT_MS", 2000),
            health_timeout_ms=_env_int("RAG_HEALTH_TIMEOUT_MS", 300),
            health_cache_seconds=_env_float("RAG_HEALTH_CACHE_SECONDS", 30.0),
            catalog_timeout_ms=_env_int("RAG_CATALOG_TIMEOUT_MS", 2000),
        )


# ---------------------------------------------------------------------------
# CACHE
# ---------------------------------------------------------------------------


@dataclass
class CacheConfig:
    """Query cache settings."""

    enabled: bool = True
    ttl_seconds: float = 3600.0
    key_prefix: str = "curriculum:rag:v1:"

    @classmethod
    def from_env(cls) -> "CacheConfig":
        return cls(
            enabled=_env_bool("RAG_CACHE_ENABLED", True),
            ttl_seconds=_env_float("RAG_CACHE_TTL_SECONDS", 3600.0),
        )


# ---------------------------------------------------------------------------
# INGESTION
# ---------------------------------------------------------------------------


@dataclass
class IngestionConfig:
    """Batch job settings."""

    workers: int = 4
    embed_batch_size: int = 20
    upsert_batch_size: int = 100
    max_attempts: int = 3
    retry_base_delay: float = 0.5
    # Prefix embedded text with title/subject/level/domain
    contextualize: bool = True

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ConfigurationError("workers must be >= 1")
        if self.embed_batch_size < 1 or self.upsert_batch_size < 1:
            raise ConfigurationError("batch sizes must be >= 1")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")

    @classmethod
    def from_env(cls) -> "IngestionConfig":
        return cls(
            workers=_env_int("INGEST_WORKERS", 4),
            embed_batch_size=_env_int("INGEST_EMBED_BATCH_SIZE", 20),
            upsert_batch_size=_env_int("INGEST_UPSERT_BATCH_SIZE", 100),
            max_attempts=_env_int("INGEST_MAX_ATTEMPTS", 3),
            retry_base_delay=_env_float("INGEST_RETRY_BASE_DELAY", 0.5),
            contextualize=_env_bool("INGEST_CONTEXTUALIZE", True),
        )


# ---------------------------------------------------------------------------
# SETTINGS TREE
# ---------------------------------------------------------------------------


@dataclass
class Settings:
    """All engine settings."""

    store: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    embeddings: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load every section from environment variables."""
        return cls(
            store=VectorStoreConfig.from_env(),
            embeddings=EmbeddingConfig.from_env(),
            chunking=ChunkingConfig.from_env(),
            retrieval=RetrievalConfig.from_env(),
            cache=CacheConfig.from_env(),
            ingestion=IngestionConfig.from_env(),
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings (lazy-loaded from env)."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
