"""
Search/health API over an orchestrator wired to a temp keyword store.
"""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from screenmem.api.main import create_app
from screenmem.core.errors import CaptureSourceError, EmbeddingProviderError
from screenmem.core.orchestrator import IngestionOrchestrator
from screenmem.vector import DeterministicHashEmbedding, SimpleInMemoryVectorStore
from screenmem.vector.indexer import VectorIndexer


@pytest.fixture
def capture_client():
    client = MagicMock()
    client.health_check.return_value = {"status": "healthy"}
    client.is_acceptable.return_value = True
    return client


@pytest.fixture
def indexer():
    return VectorIndexer(SimpleInMemoryVectorStore(), DeterministicHashEmbedding(dimension=64),
                         rate_limit_per_sec=1000)


@pytest.fixture
def orchestrator(store, capture_client, indexer, make_event):
    orch = IngestionOrchestrator(store, capture_client=capture_client, indexer=indexer)
    orch.process_event(make_event("e1", timestamp=1_000, app="Safari",
                                  ocr_text="OMEGA Seamaster Aqua Terra $3,495",
                                  url="https://www.omegawatches.com/aqua-terra"))
    orch.process_event(make_event("e2", timestamp=2_000, app="Slack", ocr_text="standup notes for Monday"))
    orch.process_event(make_event("e3", timestamp=3_000, app="Safari", ocr_text="grocery list milk eggs"))
    indexer.process_pending()
    return orch


@pytest.fixture
def client(orchestrator):
    return TestClient(create_app(orchestrator))


class TestSearchEndpoints:
    def test_keyword_search(self, client):
        response = client.get("/search", params={"q": "Seamaster"})

        assert response.status_code == 200
        data = response.json()
        assert data["query"] == "Seamaster"
        assert [r["id"] for r in data["results"]] == ["e1"]
        assert data["results"][0]["url_host"] == "www.omegawatches.com"

    def test_keyword_search_pagination(self, client):
        data = client.get("/search", params={"q": "Safari", "limit": 1, "offset": 1}).json()
        assert len(data["results"]) == 1
        assert data["limit"] == 1 and data["offset"] == 1

    def test_blank_query_rejected(self, client):
        assert client.get("/search", params={"q": "   "}).status_code == 400
        assert client.get("/search").status_code == 422

    def test_limit_bounds(self, client):
        assert client.get("/search", params={"q": "x", "limit": 0}).status_code == 422
        assert client.get("/search", params={"q": "x", "limit": 501}).status_code == 422

    def test_semantic_search_joins_records(self, client):
        data = client.get("/search/semantic", params={"q": "omega seamaster", "top_k": 1}).json()

        assert data["vector_enabled"] is True
        assert data["hits"][0]["id"] == "e1"
        assert data["hits"][0]["record"]["app"] == "Safari"
        assert data["hits"][0]["metadata"]["app"] == "Safari"

    def test_semantic_search_app_filter(self, client):
        data = client.get("/search/semantic", params={"q": "notes", "app": "Slack"}).json()
        assert [h["id"] for h in data["hits"]] == ["e2"]

    def test_semantic_search_degrades_when_provider_down(self, client, indexer):
        indexer.embedding_provider = MagicMock()
        indexer.embedding_provider.embed_text.side_effect = EmbeddingProviderError("unreachable")

        semantic = client.get("/search/semantic", params={"q": "seamaster"})
        keyword = client.get("/search", params={"q": "seamaster"})

        assert semantic.status_code == 200
        assert semantic.json()["hits"] == []
        assert [r["id"] for r in keyword.json()["results"]] == ["e1"]

    def test_semantic_search_without_vectors(self, store, capture_client):
        client = TestClient(create_app(IngestionOrchestrator(store, capture_client=capture_client)))
        data = client.get("/search/semantic", params={"q": "anything"}).json()
        assert data == {"query": "anything", "hits": [], "vector_enabled": False}


class TestBrowseEndpoints:
    def test_recent(self, client):
        data = client.get("/recent").json()
        assert [r["id"] for r in data["results"]] == ["e3", "e2", "e1"]

    def test_recent_filters(self, client):
        assert [r["id"] for r in client.get("/recent", params={"app": "Safari"}).json()["results"]] == ["e3", "e1"]
        assert [r["id"] for r in client.get("/recent", params={"since": 2_000}).json()["results"]] == ["e3", "e2"]
        hosts = client.get("/recent", params={"url_host": "www.omegawatches.com"}).json()["results"]
        assert [r["id"] for r in hosts] == ["e1"]

    def test_stats(self, client):
        data = client.get("/stats").json()
        assert data["total"] == 3
        assert data["oldest_ts"] == 1_000
        assert data["newest_ts"] == 3_000
        assert data["app_counts"] == {"Safari": 2, "Slack": 1}
        assert data["ingestion"]["vector"]["indexed"] == 3


class TestHealthEndpoint:
    def test_healthy(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["total_records"] == 3
        assert data["app_count"] == 2
        assert data["errors"] == []

    def test_degraded_when_source_down(self, client, capture_client):
        capture_client.health_check.side_effect = CaptureSourceError("refused")

        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["components"]["capture_source"] is False
        assert data["components"]["keyword_store"] is True
