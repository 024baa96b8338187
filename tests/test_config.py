"""
Unit Tests for Configuration

Environment variable handling is tested with monkeypatch; validation rules
are tested directly on the dataclasses.
"""

import pytest

from curriculum_retrieval.config import (
    CacheConfig,
    ChunkingConfig,
    EmbeddingConfig,
    IngestionConfig,
    RetrievalConfig,
    ScoreThresholds,
    Settings,
    VectorStoreConfig,
    get_settings,
    reset_settings,
)
from curriculum_retrieval.core.errors import ConfigurationError


class TestDefaults:
    """Defaults match the values other features rely on."""

    def test_retrieval_defaults(self):
        config = RetrievalConfig()

        assert config.thresholds.min_score == 0.35
        assert config.thresholds.good_score == 0.5
        assert config.thresholds.high_score == 0.7
        assert config.default_limit == 5
        assert config.max_limit == 10
        assert config.overfetch_limit == 20
        assert config.max_context_chars == 4000

    def test_health_check_fits_within_store_budget(self):
        config = RetrievalConfig()

        assert config.health_timeout_ms == 300
        assert config.health_timeout_ms <= config.store_timeout_ms

    def test_cache_defaults(self):
        config = CacheConfig()

        assert config.ttl_seconds == 3600
        assert config.key_prefix == "curriculum:rag:v1:"

    def test_chunking_defaults(self):
        config = ChunkingConfig()

        assert (config.min_chars, config.max_chars) == (400, 2000)
        assert config.overlap_chars == 300

    def test_embedding_concurrency_is_75_percent_of_budget(self):
        assert EmbeddingConfig(concurrency_budget=8).max_concurrent_calls == 6
        assert EmbeddingConfig(concurrency_budget=1).max_concurrent_calls == 1


class TestValidation:

    @pytest.mark.parametrize(
        "scores",
        [(0.5, 0.5, 0.7), (0.35, 0.8, 0.7), (-0.1, 0.5, 0.7), (0.35, 0.5, 1.2)],
    )
    def test_thresholds_must_be_ordered(self, scores):
        with pytest.raises(ConfigurationError):
            ScoreThresholds(*scores)

    def test_chunk_bounds(self):
        with pytest.raises(ConfigurationError):
            ChunkingConfig(min_chars=600, max_chars=1000)
        with pytest.raises(ConfigurationError):
            ChunkingConfig(overlap=0.5)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            VectorStoreConfig(backend="elasticsearch")

    def test_default_limit_within_max(self):
        with pytest.raises(ConfigurationError):
            RetrievalConfig(default_limit=11, max_limit=10)

    def test_ingestion_workers(self):
        with pytest.raises(ConfigurationError):
            IngestionConfig(workers=0)


class TestScoreThresholds:

    @pytest.mark.parametrize(
        "score, tier",
        [(0.9, "high"), (0.7, "high"), (0.6, "good"), (0.5, "good"), (0.4, "low"), (0.35, "low"), (0.1, "none")],
    )
    def test_classify(self, score, tier):
        assert ScoreThresholds().classify(score) == tier


class TestFromEnv:

    def setup_method(self):
        reset_settings()

    def teardown_method(self):
        reset_settings()

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("VECTOR_STORE_BACKEND", "Qdrant")
        monkeypatch.setenv("QDRANT_URL", "http://qdrant:6333")
        monkeypatch.setenv("QDRANT_COLLECTION_NAME", "programmes")
        monkeypatch.setenv("EMBEDDING_DIM", "1024")
        monkeypatch.setenv("RAG_MIN_SCORE", "0.4")
        monkeypatch.setenv("RAG_CACHE_ENABLED", "false")
        monkeypatch.setenv("INGEST_WORKERS", "2")

        settings = Settings.from_env()

        assert settings.store.backend == "qdrant"
        assert settings.store.url == "http://qdrant:6333"
        assert settings.store.collection_name == "programmes"
        assert settings.store.embedding_dim == 1024
        assert settings.embeddings.dimensions == 1024
        assert settings.retrieval.thresholds.min_score == 0.4
        assert settings.cache.enabled is False
        assert settings.ingestion.workers == 2

    def test_new_collection_variable_wins(self, monkeypatch):
        monkeypatch.setenv("QDRANT_COLLECTION", "new_name")
        monkeypatch.setenv("QDRANT_COLLECTION_NAME", "old_name")

        assert VectorStoreConfig.from_env().collection_name == "new_name"

    def test_bad_number_is_configuration_error(self, monkeypatch):
        monkeypatch.setenv("RAG_MAX_LIMIT", "ten")

        with pytest.raises(ConfigurationError, match="RAG_MAX_LIMIT"):
            RetrievalConfig.from_env()

    def test_blank_values_use_defaults(self, monkeypatch):
        monkeypatch.setenv("CHUNK_MAX_CHARS", "  ")

        assert ChunkingConfig.from_env().max_chars == 2000

    def test_get_settings_is_cached(self, monkeypatch):
        monkeypatch.delenv("VECTOR_STORE_BACKEND", raising=False)

        assert get_settings() is get_settings()
