"""
Multi-source retriever.

For one query string, searches the knowledge-base and email corpora
concurrently: a vector search per corpus and, when hybrid search is on, a
keyword search per corpus. Every source/method is fail-open: its error is
logged, reported to Sentry, recorded on the result, and it contributes an
empty list. Hits are normalized into Candidates as soon as they arrive.
"""
import asyncio
from dataclasses import dataclass, field

import sentry_sdk

from ragfusion.candidates import Candidate, Source, normalize_hits
from ragfusion.config import settings
from ragfusion.errors import RetrievalError
from ragfusion.keyword_retrieval import KeywordSearch
from ragfusion.llm_client import EmbeddingProvider
from ragfusion.logging_config import get_logger
from ragfusion.logging_utils import truncate_error
from ragfusion.qdrant_client import VectorSearch

logger = get_logger(__name__)

CORPORA = (Source.KNOWLEDGE_BASE, Source.EMAIL)


@dataclass
class RetrievalResult:
    """Raw per-source candidate lists for one query string."""
    query: str
    vector: dict[Source, list[Candidate]] = field(default_factory=dict)
    keyword: dict[Source, list[Candidate]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        out = {f"vec_{s.value}": len(v) for s, v in self.vector.items()}
        out.update({f"kw_{s.value}": len(v) for s, v in self.keyword.items()})
        return out


class MultiSourceRetriever:
    """Concurrent vector (+ optional keyword) search over both corpora."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        vector_search: VectorSearch,
        keyword_search: KeywordSearch | None = None,
        keyword_timeout: float | None = None,
    ):
        self.embedder = embedder
        self.vector_search = vector_search
        self.keyword_search = keyword_search
        self.keyword_timeout = (
            keyword_timeout if keyword_timeout is not None else settings.keyword_timeout_seconds
        )

    def _record_failure(self, result: RetrievalResult, source: str, method: str, e: Exception) -> None:
        err = truncate_error(e)
        logger.warning(f"retrieve failed | source={source} | method={method} | err={err}")
        sentry_sdk.capture_exception(e)
        result.errors.append(f"{source}/{method}: {err}")

    async def _embed(self, query: str, result: RetrievalResult) -> list[float] | None:
        try:
            vector = await self.embedder.embed(query)
        except Exception as e:
            self._record_failure(result, "all", "embed", e)
            return None
        if not vector:
            self._record_failure(result, "all", "embed", RetrievalError("all", "embed", "empty vector"))
            return None
        return vector

    async def _vector(
        self,
        corpus: Source,
        embedding: "asyncio.Task[list[float] | None]",
        limit: int,
        threshold_hint: float | None,
        kb_id: str | None,
        result: RetrievalResult,
    ) -> None:
        vector = await embedding
        if vector is None:
            result.vector[corpus] = []
            return
        try:
            raw = await self.vector_search.search(corpus, vector, limit, threshold_hint, kb_id=kb_id)
        except Exception as e:
            self._record_failure(result, corpus.value, "vector", e)
            result.vector[corpus] = []
            return
        result.vector[corpus] = normalize_hits(raw, corpus, method="vector")

    async def _keyword(
        self,
        corpus: Source,
        query: str,
        limit: int,
        kb_id: str | None,
        result: RetrievalResult,
    ) -> None:
        try:
            raw = await asyncio.wait_for(
                self.keyword_search.search(corpus, query, limit, kb_id=kb_id),
                timeout=self.keyword_timeout,
            )
        except Exception as e:
            self._record_failure(result, corpus.value, "keyword", e)
            result.keyword[corpus] = []
            return
        result.keyword[corpus] = normalize_hits(raw, corpus, method="keyword")

    async def retrieve(
        self,
        query: str,
        limit: int,
        threshold_hint: float | None = None,
        hybrid: bool = False,
        kb_id: str | None = None,
    ) -> RetrievalResult:
        """
        Search every corpus for one query string.

        Args:
            query: Query string (enhanced query, HyDE document or variant).
            limit: Hits requested per source/method.
            threshold_hint: Vector score cutoff passed to the store.
            hybrid: Also run keyword search when a backend is configured.
            kb_id: Optional knowledge base scope.

        Returns:
            RetrievalResult with one (possibly empty) list per source/method.
        """
        result = RetrievalResult(query=query)
        embedding = asyncio.create_task(self._embed(query, result))

        tasks = [
            self._vector(corpus, embedding, limit, threshold_hint, kb_id, result)
            for corpus in CORPORA
        ]
        if hybrid and self.keyword_search is not None:
            tasks.extend(self._keyword(corpus, query, limit, kb_id, result) for corpus in CORPORA)

        try:
            await asyncio.gather(*tasks)
        finally:
            if not embedding.done():
                embedding.cancel()

        logger.debug(
            "retrieve | " + " | ".join(f"{k}={v}" for k, v in result.counts().items())
            + f" | errors={len(result.errors)}"
        )
        return result
