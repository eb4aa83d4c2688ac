"""
Shared fixtures: candidate factory and in-memory fakes for the external
providers (embedding, vector search, keyword search, text generation).
"""
import asyncio

import pytest

from ragfusion.candidates import Candidate, Source


def _make_candidate(cid, score, source=Source.KNOWLEDGE_BASE, content=None, **kwargs):
    kwargs.setdefault("similarity", score)
    return Candidate(
        id=str(cid),
        source=source,
        content=content if content is not None else f"passage number {cid}",
        score=score,
        **kwargs,
    )


class FakeEmbedder:
    def __init__(self, fail: Exception | None = None):
        self.fail = fail
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise self.fail
        return [0.1, 0.2, 0.3]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(t) for t in texts]


class FakeVectorSearch:
    """Returns canned hits per corpus; `errors` maps corpus -> exception."""

    def __init__(self, hits=None, errors=None, delay: float = 0.0):
        self.hits = hits or {}
        self.errors = errors or {}
        self.delay = delay
        self.calls: list[tuple] = []

    async def search(self, corpus, vector, limit, threshold_hint=None, kb_id=None):
        self.calls.append((corpus, limit, threshold_hint, kb_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if corpus in self.errors:
            raise self.errors[corpus]
        return list(self.hits.get(corpus, []))[:limit]


class FakeKeywordSearch:
    def __init__(self, hits=None, errors=None, delay: float = 0.0):
        self.hits = hits or {}
        self.errors = errors or {}
        self.delay = delay
        self.calls: list[tuple] = []

    async def search(self, corpus, query, limit, kb_id=None):
        self.calls.append((corpus, query, limit, kb_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if corpus in self.errors:
            raise self.errors[corpus]
        return list(self.hits.get(corpus, []))[:limit]


@pytest.fixture
def make_candidate():
    return _make_candidate


@pytest.fixture
def fake_embedder():
    return FakeEmbedder


@pytest.fixture
def fake_vector_search():
    return FakeVectorSearch


@pytest.fixture
def fake_keyword_search():
    return FakeKeywordSearch
