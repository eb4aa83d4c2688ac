"""
Tests for the HTTP surface with the pipeline dependency overridden.
"""
import pytest
from fastapi.testclient import TestClient

from ragfusion.candidates import Candidate, FusionRecord, Source
from ragfusion.config import settings
from ragfusion.main import app, get_pipeline
from ragfusion.pipeline import PipelineResult, PipelineTrace
from ragfusion.query_enhancer import EnhancedQuery


class StubPipeline:
    def __init__(self, candidates):
        self.candidates = candidates
        self.calls = []

    async def run(self, query, conversation_history=None, rag_config=None, kb_id=None):
        self.calls.append((query, conversation_history, rag_config, kb_id))
        trace = PipelineTrace(run_id="test", status="ok", queries=[query])
        enhanced = EnhancedQuery(original_query=query, enhanced_query=f"{query} (standalone)")
        return PipelineResult(candidates=self.candidates, trace=trace, enhanced=enhanced)


def _candidates():
    kb = Candidate(
        id="kb1", source=Source.KNOWLEDGE_BASE, content="Refunds take five days.", score=0.9,
        title="policy.md", metadata={"file_name": "policy.md", "nested": {"x": 1}},
    )
    email = Candidate(id="em1", source=Source.EMAIL, content="Customer asked for a refund.", score=0.6)
    return [kb.with_score(0.9, FusionRecord(method="vector_only", output=0.9)), email]


@pytest.fixture
def stub():
    pipeline = StubPipeline(_candidates())
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield pipeline
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_retrieve_returns_results_and_context(client, stub):
    response = client.post("/retrieve", json={
        "query": "refund",
        "kb_id": "kb-1",
        "rag_config": {"maxResults": 2},
        "conversation_history": [{"role": "user", "content": "hi"}],
    })

    assert response.status_code == 200
    body = response.json()
    assert [r["id"] for r in body["results"]] == ["kb1", "em1"]
    assert body["results"][0]["score_history"][0]["stage"] == "fusion"
    assert body["results"][0]["metadata"] == {"file_name": "policy.md"}
    assert body["context"].startswith("[1] policy.md (Knowledge Base):")
    assert [s["source"] for s in body["sources"]] == ["knowledge_base", "email"]
    assert body["enhanced_query"] == "refund (standalone)"
    assert body["trace"] is None
    query, history, rag_config, kb_id = stub.calls[0]
    assert (query, rag_config, kb_id) == ("refund", {"maxResults": 2}, "kb-1")
    assert history[0].content == "hi"
    assert "X-Request-ID" in response.headers


def test_retrieve_with_trace_and_token_budget(client, stub):
    response = client.post("/retrieve", json={"query": "refund", "include_trace": True, "max_context_tokens": 7})

    body = response.json()
    assert body["trace"]["status"] == "ok"
    assert "Customer asked" not in body["context"]
    assert len(body["results"]) == 2


def test_empty_query_rejected(client, stub):
    assert client.post("/retrieve", json={"query": ""}).status_code == 422


def test_api_key_enforced_when_configured(client, stub, monkeypatch):
    monkeypatch.setattr(settings, "api_key", "secret")

    assert client.post("/retrieve", json={"query": "q"}).status_code == 401
    assert client.post("/retrieve", json={"query": "q"}, headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.post("/retrieve", json={"query": "q"}, headers={"X-API-Key": "secret"}).status_code == 200
