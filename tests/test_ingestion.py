"""
Unit Tests for IngestionPipeline

Runs the pipeline against InMemoryVectorStore and deterministic mock
embeddings, with retries that never sleep.

STAFF ENGINEER PATTERNS:
------------------------
1. Idempotency: a second run over unchanged input writes nothing
2. Failure isolation: one bad chunk or document never aborts the run
3. Inject clock and sleep so time-dependent behaviour is deterministic
"""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from curriculum_retrieval.cache import InMemoryCacheBackend, QueryCache
from curriculum_retrieval.chunking import DocumentChunker
from curriculum_retrieval.config import ChunkingConfig, IngestionConfig, VectorStoreConfig
from curriculum_retrieval.core.errors import ConnectivityError, EmbeddingError
from curriculum_retrieval.documents import CurriculumDocument
from curriculum_retrieval.embeddings import MockEmbeddings
from curriculum_retrieval.ingestion import IngestionPipeline, IngestionReport
from curriculum_retrieval.store import InMemoryVectorStore


# ---------------------------------------------------------------------------
# FIXTURES
# ---------------------------------------------------------------------------


def sentences(n, topic="les fractions simples"):
    return " ".join(f"Phrase numéro {i} sur {topic}." for i in range(n))


def make_document(doc_id="doc-1", n=8, **overrides):
    data = {
        "id": doc_id,
        "content": sentences(n),
        "level": "cinquieme",
        "subject": "mathematiques",
        "title": "Les fractions",
        "domain": "Nombres et calculs",
    }
    data.update(overrides)
    return CurriculumDocument(**data)


class CountingEmbeddings(MockEmbeddings):
    """MockEmbeddings that counts embedded texts."""

    def __init__(self, dimensions=64):
        super().__init__(dimensions)
        self.embedded = 0

    def embed(self, text):
        self.embedded += 1
        return super().embed(text)

    def embed_batch(self, texts):
        return [self.embed(t) for t in texts]


class SlowEmbeddings(MockEmbeddings):
    """MockEmbeddings that records the peak number of concurrent batch calls."""

    def __init__(self, dimensions=64, delay=0.02):
        super().__init__(dimensions)
        self.delay = delay
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def embed_batch(self, texts):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self.delay)
            return super().embed_batch(texts)
        finally:
            with self._lock:
                self.active -= 1


class StepClock:
    def __init__(self):
        self.now = datetime(2025, 9, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(minutes=1)
        return self.now


@pytest.fixture
def store():
    return InMemoryVectorStore(VectorStoreConfig(embedding_dim=64))


@pytest.fixture
def embeddings():
    return CountingEmbeddings()


@pytest.fixture
def chunker():
    return DocumentChunker(ChunkingConfig(min_chars=40, max_chars=120, overlap=0.15))


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_pipeline(chunker, embeddings, store, sleeps):
    def _make(config=None, cache=None, now=None):
        return IngestionPipeline(
            chunker,
            embeddings,
            store,
            config=config or IngestionConfig(workers=1),
            cache=cache,
            sleep=sleeps.append,
            now=now or StepClock(),
        )

    return _make


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()


# ---------------------------------------------------------------------------
# HAPPY PATH
# ---------------------------------------------------------------------------


class TestRun:

    def test_first_run_inserts_every_chunk(self, pipeline, chunker, store):
        document = make_document()
        expected = chunker.chunk(document)

        report = pipeline.run([document])

        assert report.success
        assert report.inserted == len(expected) > 1
        assert report.updated == report.skipped == 0
        assert report.chunks_created == len(expected)
        assert report.documents_processed == 1
        assert report.by_subject == {"mathematiques": len(expected)}
        assert store.point_ids() == {c.id for c in expected}
        assert report.collection_stats.point_count == len(expected)

    def test_payload_contents(self, pipeline, chunker, store):
        document = make_document()
        first = chunker.chunk(document)[0]

        pipeline.run([document])

        payload = store.get_points([first.id])[first.id]
        assert payload["document_id"] == "doc-1"
        assert payload["chunk_index"] == 0
        assert payload["content"] == first.content
        assert payload["level"] == "cinquieme"
        assert payload["subject"] == "mathematiques"
        assert payload["cycle"] == "cycle4"
        assert payload["title"] == "Les fractions"
        assert payload["fingerprint"]
        assert payload["created_at"] == payload["updated_at"]

    def test_accepts_raw_dicts(self, pipeline):
        report = pipeline.run([{
            "id": "doc-raw",
            "content": "Un nombre décimal s'écrit avec une virgule.",
            "level": "sixieme",
            "subject": "mathematiques",
        }])

        assert report.success
        assert report.inserted == 1

    def test_empty_document_yields_no_chunks(self, pipeline, embeddings):
        report = pipeline.run([make_document(content="   ")])

        assert report.success
        assert report.chunks_created == 0
        assert embeddings.embedded == 0

    def test_parallel_workers(self, make_pipeline, store):
        pipeline = make_pipeline(config=IngestionConfig(workers=4))
        documents = [make_document(f"doc-{i}", n=4) for i in range(6)]
        documents.append(make_document("doc-fr", n=4, subject="francais"))

        report = pipeline.run(documents)

        assert report.success
        assert report.documents_processed == 7
        assert report.inserted == store.stats().point_count
        assert set(report.by_subject) == {"mathematiques", "francais"}

    def test_embedding_calls_capped_across_workers(self, chunker, store):
        embeddings = SlowEmbeddings()
        pipeline = IngestionPipeline(
            chunker,
            embeddings,
            store,
            config=IngestionConfig(workers=8),
            max_concurrent_embeddings=2,
            sleep=lambda s: None,
        )
        documents = [make_document(f"doc-{i}", n=4) for i in range(8)]

        report = pipeline.run(documents)

        assert report.success
        assert 1 <= embeddings.peak <= 2

    def test_report_serialization(self, pipeline):
        report = pipeline.run([make_document()])

        data = report.to_dict()

        assert data["success"] is True
        assert data["inserted"] == report.inserted
        assert data["collection_stats"]["point_count"] == report.inserted
        assert "inserted" in report.summary()


# ---------------------------------------------------------------------------
# IDEMPOTENCY
# ---------------------------------------------------------------------------


class TestIdempotency:

    def test_unchanged_rerun_skips_everything(self, pipeline, embeddings, store):
        document = make_document()
        first = pipeline.run([document])
        embedded_after_first = embeddings.embedded

        second = pipeline.run([document])

        assert second.skipped == first.inserted
        assert second.inserted == second.updated == 0
        assert second.changed is False
        assert embeddings.embedded == embedded_after_first
        assert store.stats().point_count == first.inserted

    def test_metadata_change_updates_in_place(self, pipeline, store):
        pipeline.run([make_document()])
        ids_before = store.point_ids()

        report = pipeline.run([make_document(title="Fractions et quotients")])

        assert report.updated == len(ids_before)
        assert report.inserted == 0
        assert store.point_ids() == ids_before

    def test_created_at_preserved_on_update(self, pipeline, chunker, store):
        document = make_document()
        first_id = chunker.chunk(document)[0].id
        pipeline.run([document])
        created = store.get_points([first_id])[first_id]["created_at"]

        pipeline.run([make_document(domain="Grandeurs et mesures")])

        payload = store.get_points([first_id])[first_id]
        assert payload["created_at"] == created
        assert payload["updated_at"] > created

    def test_model_change_reembeds(self, chunker, store, pipeline):
        pipeline.run([make_document()])

        class OtherModel(CountingEmbeddings):
            pass

        other = IngestionPipeline(
            chunker, OtherModel(), store, config=IngestionConfig(workers=1), sleep=lambda s: None
        )
        report = other.run([make_document()])

        assert report.skipped == 0
        assert report.updated == store.stats().point_count


# ---------------------------------------------------------------------------
# DRY RUN
# ---------------------------------------------------------------------------


class TestDryRun:

    def test_dry_run_writes_nothing(self, pipeline, embeddings, store):
        report = pipeline.run([make_document()], dry_run=True)

        assert report.dry_run is True
        assert report.chunks_created > 1
        assert report.inserted == 0
        assert report.collection_stats is None
        assert embeddings.embedded == 0
        assert store.stats().point_count == 0

    def test_dry_run_still_validates(self, pipeline):
        report = pipeline.run([{"id": "bad", "content": "x", "level": "licence", "subject": "maths"}], dry_run=True)

        assert [e.kind for e in report.errors] == ["validation"]


# ---------------------------------------------------------------------------
# VALIDATION
# ---------------------------------------------------------------------------


class TestValidation:

    def test_invalid_document_rejected_others_processed(self, pipeline):
        report = pipeline.run([
            {"id": "bad", "content": "Texte.", "subject": "mathematiques"},
            make_document(),
        ])

        assert not report.success
        assert report.errors[0].document_id == "bad"
        assert report.errors[0].kind == "validation"
        assert report.documents_processed == 1
        assert report.inserted > 0

    def test_duplicate_ids_rejected(self, pipeline):
        report = pipeline.run([make_document(), make_document(title="Copie")])

        assert len(report.errors) == 1
        assert report.errors[0].kind == "validation"
        assert report.documents_processed == 1

    def test_unsupported_input(self, pipeline):
        report = pipeline.run([42])

        assert report.errors[0].kind == "validation"
        assert report.documents_processed == 0


# ---------------------------------------------------------------------------
# FAILURES
# ---------------------------------------------------------------------------


class PoisonEmbeddings(CountingEmbeddings):
    """Batch calls always fail; single calls fail on texts mentioning poison."""

    def embed_batch(self, texts):
        raise EmbeddingError("batch endpoint unavailable")

    def embed(self, text):
        if "poison" in text:
            raise EmbeddingError("content rejected")
        return super().embed(text)


class TestFailures:

    def test_per_chunk_fallback_isolates_bad_chunk(self, chunker, store, sleeps):
        pipeline = IngestionPipeline(
            chunker,
            PoisonEmbeddings(),
            store,
            config=IngestionConfig(workers=1),
            sleep=sleeps.append,
        )

        report = pipeline.run([
            make_document("doc-bad", content="Le poison est dangereux."),
            make_document("doc-good", content="Les fractions simples."),
        ])

        assert report.inserted == 1
        assert [(e.document_id, e.kind) for e in report.errors] == [("doc-bad", "embedding")]
        assert report.errors[0].chunk_id is not None
        assert store.point_ids("doc-good")
        assert not store.point_ids("doc-bad")

    def test_transient_upsert_failure_is_retried(self, pipeline, store, sleeps, monkeypatch):
        original = store.upsert_points
        calls = []

        def flaky(points):
            calls.append(len(points))
            if len(calls) == 1:
                raise ConnectivityError("connection reset")
            return original(points)

        monkeypatch.setattr(store, "upsert_points", flaky)

        report = pipeline.run([make_document()])

        assert report.success
        assert len(calls) == 2
        assert sleeps == [0.5]

    def test_persistent_store_failure_recorded_per_point(self, pipeline, store, sleeps, monkeypatch):
        def broken(points):
            raise ConnectivityError("store down")

        monkeypatch.setattr(store, "upsert_points", broken)

        report = pipeline.run([make_document()])

        assert report.inserted == 0
        assert len(report.errors) == report.chunks_created
        assert {e.kind for e in report.errors} == {"store"}
        assert sleeps == [0.5, 1.0]

    def test_unexpected_error_isolated_to_document(self, pipeline, chunker, monkeypatch):
        original = chunker.chunk

        def chunk(document):
            if document.id == "doc-boom":
                raise RuntimeError("boom")
            return original(document)

        monkeypatch.setattr(chunker, "chunk", chunk)

        report = pipeline.run([make_document("doc-boom"), make_document("doc-ok")])

        assert [(e.document_id, e.kind) for e in report.errors] == [("doc-boom", "unexpected")]
        assert report.inserted > 0

    def test_lookup_failure_skips_document(self, pipeline, store, monkeypatch):
        def broken(ids):
            raise ConnectivityError("timeout")

        monkeypatch.setattr(store, "get_points", broken)

        report = pipeline.run([make_document()])

        assert report.errors[0].kind == "store"
        assert report.inserted == 0


# ---------------------------------------------------------------------------
# CACHE INVALIDATION
# ---------------------------------------------------------------------------


class TestCacheInvalidation:

    @pytest.fixture
    def cache(self):
        return QueryCache(InMemoryCacheBackend())

    def test_changes_bump_generation(self, make_pipeline, cache):
        pipeline = make_pipeline(cache=cache)

        pipeline.run([make_document()])
        generation = cache.generation()
        assert generation != "0"

        pipeline.run([make_document()])
        assert cache.generation() == generation

    def test_dry_run_keeps_cache(self, make_pipeline, cache):
        make_pipeline(cache=cache).run([make_document()], dry_run=True)

        assert cache.generation() == "0"


# ---------------------------------------------------------------------------
# REINDEX / DELETE
# ---------------------------------------------------------------------------


class TestReindexAndDelete:

    def test_reindex_removes_stale_chunks(self, pipeline, chunker, store):
        pipeline.run([make_document(n=8)])
        shorter = make_document(n=2)
        expected = chunker.chunk(shorter)

        report = pipeline.reindex_document(shorter)

        assert report.success
        assert report.deleted > len(expected)
        assert report.inserted == len(expected)
        assert store.point_ids("doc-1") == {c.id for c in expected}

    def test_plain_run_leaves_stale_chunks(self, pipeline, store):
        pipeline.run([make_document(n=8)])
        before = len(store.point_ids("doc-1"))

        pipeline.run([make_document(n=2)])

        assert len(store.point_ids("doc-1")) == before

    def test_reindex_invalid_document(self, pipeline, store):
        pipeline.run([make_document()])

        report = pipeline.reindex_document({"id": "doc-1", "content": "x", "level": "bac", "subject": "m"})

        assert report.errors[0].kind == "validation"
        assert store.point_ids("doc-1")

    def test_delete_document(self, make_pipeline, store):
        cache = QueryCache(InMemoryCacheBackend())
        pipeline = make_pipeline(cache=cache)
        pipeline.run([make_document(), make_document("doc-2")])
        generation = cache.generation()

        removed = pipeline.delete_document("doc-1")

        assert removed > 0
        assert not store.point_ids("doc-1")
        assert store.point_ids("doc-2")
        assert cache.generation() != generation

    def test_delete_unknown_document(self, pipeline):
        assert pipeline.delete_document("nope") == 0

    def test_delete_propagates_store_errors(self, pipeline, store):
        store.healthy = False

        with pytest.raises(ConnectivityError):
            pipeline.delete_document("doc-1")


# ---------------------------------------------------------------------------
# EMBEDDING TEXT
# ---------------------------------------------------------------------------


class TestEmbeddingText:

    def test_contextual_header(self, pipeline, chunker):
        document = make_document()
        chunk = chunker.chunk(document)[0]

        text = pipeline.embedding_text(document, chunk)

        assert text == (
            'Document: "Les fractions" (mathematiques, cinquieme)\n'
            "Domaine: Nombres et calculs\n\n" + chunk.content
        )

    def test_header_without_domain(self, pipeline, chunker):
        document = make_document(domain=None, title=None)
        chunk = chunker.chunk(document)[0]

        assert pipeline.embedding_text(document, chunk).startswith(
            'Document: "doc-1" (mathematiques, cinquieme)\n\n'
        )

    def test_contextualize_off(self, make_pipeline, chunker):
        pipeline = make_pipeline(config=IngestionConfig(workers=1, contextualize=False))
        document = make_document()
        chunk = chunker.chunk(document)[0]

        assert pipeline.embedding_text(document, chunk) == chunk.content


class TestReport:

    def test_merge(self):
        total = IngestionReport(inserted=1, by_subject={"mathematiques": 2})

        total.merge(IngestionReport(inserted=2, skipped=1, by_subject={"mathematiques": 1, "francais": 3}))

        assert total.inserted == 3
        assert total.skipped == 1
        assert total.by_subject == {"mathematiques": 3, "francais": 3}
        assert total.changed is True
