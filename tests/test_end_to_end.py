"""
End-to-End Tests

Builds the whole engine (chunker, mock embeddings, in-memory store, cache,
gate) through build_engine() and drives it the way chat and the ingestion
job do: ingest a curriculum, ask questions, reindex, ask again.
"""

import pytest

from curriculum_retrieval.config import (
    ChunkingConfig,
    EmbeddingConfig,
    IngestionConfig,
    Settings,
    VectorStoreConfig,
)
from curriculum_retrieval.engine import build_engine
from curriculum_retrieval.store import InMemoryVectorStore

FRACTIONS = "Pour additionner deux fractions, on les réduit au même dénominateur."


@pytest.fixture
def settings():
    return Settings(
        store=VectorStoreConfig(embedding_dim=1536),
        embeddings=EmbeddingConfig(use_mock=True, dimensions=1536),
        chunking=ChunkingConfig(min_chars=40, max_chars=120),
        ingestion=IngestionConfig(workers=2, contextualize=False),
    )


@pytest.fixture
def engine(settings):
    engine = build_engine(settings, store=InMemoryVectorStore(settings.store))
    yield engine
    engine.close()


def curriculum():
    return [
        {
            "id": "maths-5e-fractions",
            "content": FRACTIONS,
            "level": "cinquieme",
            "subject": "mathematiques",
            "title": "Fractions",
            "domain": "Nombres et calculs",
        },
        {
            "id": "histoire-4e-revolution",
            "content": "La Révolution française commence en 1789 avec les États généraux.",
            "level": "quatrieme",
            "subject": "histoire",
            "title": "La Révolution",
        },
        {
            "id": "maths-6e-decimaux",
            "content": "Un nombre décimal peut s'écrire avec une virgule.",
            "level": "sixieme",
            "subject": "mathematiques",
        },
    ]


class TestIngestThenSearch:

    def test_question_finds_its_passage(self, engine):
        report = engine.pipeline.run(curriculum())
        assert report.success
        assert report.inserted == 3

        response = engine.service.search("comment additionner des fractions", "cinquieme", "mathematiques")

        assert response.found is True
        assert response.chunks[0].content == FRACTIONS
        assert response.chunks[0].title == "Fractions"
        assert response.chunks[0].domain == "Nombres et calculs"
        assert response.average_score == pytest.approx(0.577, abs=0.01)
        assert engine.service.is_well_covered(response)
        assert engine.service.confidence(response) == "good"
        assert response.context.startswith("[1] Fractions (cinquieme - mathematiques)\n")

    def test_other_slices_are_not_searched(self, engine):
        engine.pipeline.run(curriculum())

        response = engine.service.search("comment additionner des fractions", "sixieme", "mathematiques")

        assert response.found is False
        assert not response.degraded

    def test_repeated_question_is_cached(self, engine):
        engine.pipeline.run(curriculum())

        engine.service.search("comment additionner des fractions", "cinquieme", "mathematiques")
        again = engine.service.search("Comment additionner des FRACTIONS", "cinquieme", "mathematiques")

        assert again.cached is True
        assert again.found is True

    def test_ingestion_invalidates_cached_answers(self, engine):
        engine.service.search("comment additionner des fractions", "cinquieme", "mathematiques")

        engine.pipeline.run(curriculum())
        response = engine.service.search("comment additionner des fractions", "cinquieme", "mathematiques")

        assert response.cached is False
        assert response.found is True

    def test_rerun_is_idempotent(self, engine):
        engine.pipeline.run(curriculum())

        report = engine.pipeline.run(curriculum())

        assert report.skipped == 3
        assert report.inserted == report.updated == 0
        assert engine.store.stats().point_count == 3


class TestReindex:

    def test_reindex_replaces_document(self, engine):
        long_document = {
            "id": "maths-5e-proportions",
            "content": " ".join(
                f"La proportionnalité numéro {i} relie deux grandeurs par un coefficient."
                for i in range(6)
            ),
            "level": "cinquieme",
            "subject": "mathematiques",
            "title": "Proportionnalité",
        }
        engine.pipeline.run([long_document])
        assert len(engine.store.point_ids("maths-5e-proportions")) > 1

        replaced = dict(long_document, content="Le pourcentage exprime une proportion sur cent.")
        report = engine.pipeline.reindex_document(replaced)

        assert report.success
        assert len(engine.store.point_ids("maths-5e-proportions")) == 1
        stale = engine.service.search("coefficient grandeurs", "cinquieme", "mathematiques")
        fresh = engine.service.search("pourcentage", "cinquieme", "mathematiques")
        assert stale.found is False
        assert fresh.found is True


class TestDegradation:

    def test_store_outage_degrades_then_recovers(self, settings):
        settings.retrieval.health_cache_seconds = 0
        store = InMemoryVectorStore(settings.store)
        engine = build_engine(settings, store=store)
        try:
            engine.pipeline.run(curriculum())
            store.healthy = False

            down = engine.service.search("additionner des fractions", "cinquieme", "mathematiques")

            store.healthy = True
            up = engine.service.search("additionner des fractions", "cinquieme", "mathematiques")
        finally:
            engine.close()

        assert down.found is False
        assert down.degraded_reason == "store_unhealthy"
        assert up.found is True
        assert up.cached is False
