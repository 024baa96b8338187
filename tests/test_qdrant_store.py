"""
Unit Tests for QdrantVectorStore

The Qdrant client is mocked; tests verify the calls the wrapper makes and
how driver failures are surfaced.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest
from qdrant_client.models import Distance, Filter, FilterSelector, PointStruct

from curriculum_retrieval.config import VectorStoreConfig
from curriculum_retrieval.core.errors import ConfigurationError, ConnectivityError
from curriculum_retrieval.core.protocols import IndexedPoint
from curriculum_retrieval.store import QdrantVectorStore, get_vector_store
from curriculum_retrieval.store.qdrant_store import build_filter

POINT_ID = "6f1c7a52-1c35-5b64-9a53-0f3c1d2e4b7a"


# ---------------------------------------------------------------------------
# FIXTURES
# ---------------------------------------------------------------------------


@pytest.fixture
def config():
    return VectorStoreConfig(
        backend="qdrant",
        url="http://localhost:6333",
        collection_name="test_chunks",
        embedding_dim=3,
    )


@pytest.fixture
def client():
    client = MagicMock()
    client.get_collections.return_value.collections = []
    return client


@pytest.fixture
def store(config, client):
    store = QdrantVectorStore(config)
    store._client = client
    return store


# ---------------------------------------------------------------------------
# SETUP
# ---------------------------------------------------------------------------


class TestSetup:

    def test_factory_returns_qdrant_store(self, config):
        assert isinstance(get_vector_store(config), QdrantVectorStore)

    def test_connect_requires_url(self):
        store = QdrantVectorStore(VectorStoreConfig(backend="qdrant"))

        with pytest.raises(ConfigurationError, match="QDRANT_URL"):
            store.connect()

    def test_ensure_collection_creates_collection_and_indexes(self, store, client):
        store.ensure_collection()

        kwargs = client.create_collection.call_args.kwargs
        assert kwargs["collection_name"] == "test_chunks"
        assert kwargs["vectors_config"].size == 3
        assert kwargs["vectors_config"].distance == Distance.COSINE
        indexed = {c.kwargs["field_name"] for c in client.create_payload_index.call_args_list}
        assert indexed == {"level", "subject", "document_id"}

    def test_ensure_collection_keeps_matching_collection(self, store, client):
        client.get_collections.return_value.collections = [SimpleNamespace(name="test_chunks")]
        client.get_collection.return_value.config.params.vectors.size = 3

        store.ensure_collection()

        client.create_collection.assert_not_called()

    def test_ensure_collection_rejects_dimension_mismatch(self, store, client):
        client.get_collections.return_value.collections = [SimpleNamespace(name="test_chunks")]
        client.get_collection.return_value.config.params.vectors.size = 1024

        with pytest.raises(ConfigurationError, match="reindex"):
            store.ensure_collection()


# ---------------------------------------------------------------------------
# POINTS
# ---------------------------------------------------------------------------


class TestPoints:

    def test_build_filter(self):
        assert build_filter(None) is None

        query_filter = build_filter({"level": "cinquieme", "subject": "mathematiques"})

        assert isinstance(query_filter, Filter)
        assert [c.key for c in query_filter.must] == ["level", "subject"]
        assert query_filter.must[0].match.value == "cinquieme"

    def test_upsert_points(self, store, client):
        store.upsert_points([
            IndexedPoint(
                id=POINT_ID,
                vector=np.array([0.1, 0.2, 0.3]),
                payload={"document_id": "doc-1", "content": "x"},
            )
        ])

        kwargs = client.upsert.call_args.kwargs
        assert kwargs["wait"] is True
        assert isinstance(kwargs["points"][0], PointStruct)
        assert kwargs["points"][0].payload["document_id"] == "doc-1"

    def test_query_returns_sorted_clamped_results(self, store, client):
        client.query_points.return_value.points = [
            SimpleNamespace(id="b", score=0.4, payload={"document_id": "doc-1"}),
            SimpleNamespace(id="a", score=1.2, payload={"document_id": "doc-1"}),
        ]

        results = store.query(np.array([0.1, 0.2, 0.3]), filter={"level": "cinquieme"}, limit=3)

        assert [r.id for r in results] == ["a", "b"]
        assert results[0].score == 1.0
        kwargs = client.query_points.call_args.kwargs
        assert kwargs["limit"] == 3
        assert kwargs["query_filter"].must[0].key == "level"

    def test_get_points(self, store, client):
        client.retrieve.return_value = [SimpleNamespace(id=POINT_ID, payload={"fingerprint": "f"})]

        assert store.get_points([POINT_ID]) == {POINT_ID: {"fingerprint": "f"}}

    def test_delete_by_prefix(self, store, client):
        client.count.return_value.count = 3

        assert store.delete_by_prefix("doc-1") == 3
        selector = client.delete.call_args.kwargs["points_selector"]
        assert isinstance(selector, FilterSelector)
        assert selector.filter.must[0].key == "document_id"

    def test_delete_nothing_skips_delete_call(self, store, client):
        client.count.return_value.count = 0

        assert store.delete_by_prefix("doc-1") == 0
        client.delete.assert_not_called()

    def test_distinct_values_scrolls_every_page(self, store, client):
        client.scroll.side_effect = [
            ([SimpleNamespace(payload={"domain": "Nombres", "title": "Fractions"})], "next-page"),
            (
                [
                    SimpleNamespace(payload={"domain": "Nombres", "title": "Fractions"}),
                    SimpleNamespace(payload={"title": "Durées"}),
                ],
                None,
            ),
        ]

        values = store.distinct_values(("domain", "title"), {"level": "cinquieme"})

        assert values == {("Nombres", "Fractions"), (None, "Durées")}
        first, second = client.scroll.call_args_list
        assert first.kwargs["offset"] is None
        assert second.kwargs["offset"] == "next-page"
        assert first.kwargs["with_payload"] == ["domain", "title"]
        assert first.kwargs["with_vectors"] is False
        assert first.kwargs["scroll_filter"].must[0].key == "level"

    def test_driver_errors_become_connectivity_errors(self, store, client):
        client.query_points.side_effect = RuntimeError("connection reset")

        with pytest.raises(ConnectivityError, match="connection reset"):
            store.query(np.array([0.1, 0.2, 0.3]))


# ---------------------------------------------------------------------------
# OPS
# ---------------------------------------------------------------------------


class TestOps:

    def test_health_ok(self, store):
        assert store.health() is True

    def test_health_never_raises(self, store, client):
        client.get_collections.side_effect = RuntimeError("timeout")

        assert store.health() is False

    def test_stats(self, store, client):
        info = client.get_collection.return_value
        info.status = SimpleNamespace(value="green")
        info.points_count = 7
        info.config.params.vectors.size = 3

        stats = store.stats()

        assert stats.point_count == 7
        assert stats.status == "green"
        assert stats.vector_size == 3

    def test_close(self, store, client):
        store.close()

        client.close.assert_called_once()
        assert store._client is None
