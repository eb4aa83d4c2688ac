"""
Retrieval pipeline entry point.

    enhance -> retrieve (per query string, concurrently) -> fuse (per query)
    -> merge (across query strings) -> threshold -> temporal decay
    -> rerank -> ensemble balance

Lower stages absorb their own recoverable failures. retrieve_and_rank absorbs
everything else, including the overall timeout, and returns an empty list so
a retrieval failure never blocks the chat turn.
"""
import asyncio
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Iterator, Mapping, Sequence

import sentry_sdk
from pydantic import ValidationError

from ragfusion.candidates import Candidate
from ragfusion.config import settings
from ragfusion.config_store import RAGConfigStore
from ragfusion.ensemble import BalanceOptions, balance
from ragfusion.errors import PipelineError
from ragfusion.filters import apply_temporal_decay, threshold_filter
from ragfusion.hybrid import FusionStats, fuse, merge_variant_results
from ragfusion.logging_config import get_logger
from ragfusion.logging_utils import new_run_id, truncate_error
from ragfusion.query_enhancer import (
    EnhancedQuery,
    EnhancementOptions,
    QueryEnhancer,
    get_all_search_queries,
)
from ragfusion.rag_config import RAGConfig, resolve_rag_config
from ragfusion.reranker import RerankOptions, rerank
from ragfusion.retriever import CORPORA, MultiSourceRetriever, RetrievalResult

logger = get_logger(__name__)

TRACE_TOP_N = 3


# ============== Trace ==============

@dataclass
class StageTrace:
    name: str
    input_count: int
    output_count: int = 0
    elapsed_ms: float = 0.0
    top_scores: list[float] = field(default_factory=list)

    def record(self, candidates: Sequence[Candidate]) -> None:
        self.output_count = len(candidates)
        self.top_scores = [round(c.score, 4) for c in candidates[:TRACE_TOP_N]]


@dataclass
class PipelineTrace:
    """Per-run observability data. Never read by the ranking code."""
    run_id: str
    status: str = "running"  # "ok" | "error" | "timeout"
    queries: list[str] = field(default_factory=list)
    retrieval: list[dict[str, Any]] = field(default_factory=list)
    fusion: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    stages: list[StageTrace] = field(default_factory=list)
    total_ms: float = 0.0

    @contextmanager
    def stage(self, name: str, input_count: int) -> Iterator[StageTrace]:
        entry = StageTrace(name=name, input_count=input_count)
        self.stages.append(entry)
        start = time.perf_counter()
        try:
            yield entry
        finally:
            entry.elapsed_ms = round((time.perf_counter() - start) * 1000, 2)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineResult:
    candidates: list[Candidate]
    trace: PipelineTrace
    enhanced: EnhancedQuery | None = None


# ============== Pipeline ==============

class RetrievalPipeline:
    """Wires the stages together around injected providers and stores."""

    def __init__(
        self,
        retriever: MultiSourceRetriever,
        enhancer: QueryEnhancer | None = None,
        config_store: RAGConfigStore | None = None,
        timeout: float | None = None,
    ):
        self.retriever = retriever
        self.enhancer = enhancer
        self.config_store = config_store
        self.timeout = timeout if timeout is not None else settings.pipeline_timeout_seconds

    async def resolve_config(
        self,
        rag_config: Mapping[str, Any] | RAGConfig | None,
        kb_id: str | None,
    ) -> RAGConfig:
        """Explicit override -> stored per-KB config -> defaults, resolved once."""
        if isinstance(rag_config, RAGConfig):
            return rag_config
        stored = None
        if kb_id and self.config_store is not None:
            stored = await self.config_store.get(kb_id)
        try:
            return resolve_rag_config(rag_config, stored)
        except ValidationError as e:
            raise PipelineError(f"invalid rag_config for kb_id={kb_id}: {e.error_count()} errors") from e

    async def retrieve_and_rank(
        self,
        query: str,
        conversation_history: Sequence[Any] | None = None,
        rag_config: Mapping[str, Any] | RAGConfig | None = None,
        kb_id: str | None = None,
    ) -> list[Candidate]:
        """
        Final ranked, balanced candidates for a query; [] on any failure.
        """
        result = await self.run(query, conversation_history, rag_config, kb_id=kb_id)
        return result.candidates

    async def run(
        self,
        query: str,
        conversation_history: Sequence[Any] | None = None,
        rag_config: Mapping[str, Any] | RAGConfig | None = None,
        kb_id: str | None = None,
    ) -> PipelineResult:
        """Like retrieve_and_rank, also returning the trace and enhanced query."""
        trace = PipelineTrace(run_id=new_run_id())
        holder: dict[str, Any] = {}
        start = time.perf_counter()

        try:
            candidates = await asyncio.wait_for(
                self._run(query, conversation_history or [], rag_config, kb_id, trace, holder),
                timeout=self.timeout,
            )
            trace.status = "ok"
        except asyncio.TimeoutError:
            logger.warning(f"[{trace.run_id}] retrieve_and_rank timeout | timeout={self.timeout}s")
            trace.status = "timeout"
            trace.errors.append(f"timeout after {self.timeout}s")
            candidates = []
        except Exception as e:
            err = e if isinstance(e, PipelineError) else PipelineError(truncate_error(e))
            logger.error(f"[{trace.run_id}] retrieve_and_rank failed | err={truncate_error(err)}")
            sentry_sdk.capture_exception(e)
            trace.status = "error"
            trace.errors.append(str(err))
            candidates = []

        trace.total_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            f"[{trace.run_id}] retrieve_and_rank | status={trace.status} | "
            f"queries={len(trace.queries)} | final={len(candidates)} | "
            f"errors={len(trace.errors)} | ms={trace.total_ms}"
        )
        return PipelineResult(candidates=candidates, trace=trace, enhanced=holder.get("enhanced"))

    async def _enhance(
        self,
        query: str,
        history: Sequence[Any],
        config: RAGConfig,
    ) -> EnhancedQuery:
        if self.enhancer is None or not config.query_enhancement_enabled:
            return EnhancedQuery(original_query=query, enhanced_query=query)
        return await self.enhancer.enhance(query, history, EnhancementOptions.from_config(config))

    def _fuse_one(self, result: RetrievalResult, config: RAGConfig) -> tuple[list[Candidate], list[FusionStats]]:
        fused: list[Candidate] = []
        stats = []
        for corpus in CORPORA:
            corpus_fused, corpus_stats = fuse(
                result.vector.get(corpus, []),
                result.keyword.get(corpus, []),
                method=config.fusion_method,
                query=result.query,
                vector_weight=config.vector_weight,
                bm25_weight=config.bm25_weight,
                rrf_k=config.rrf_k,
                normalization_method=config.normalization_method,
                adaptive_weights=config.adaptive_weights,
            )
            fused.extend(corpus_fused)
            stats.append(corpus_stats)
        fused.sort(key=lambda c: (-c.score, c.id, c.source.value))
        return fused, stats

    async def _run(
        self,
        query: str,
        history: Sequence[Any],
        rag_config: Mapping[str, Any] | RAGConfig | None,
        kb_id: str | None,
        trace: PipelineTrace,
        holder: dict[str, Any],
    ) -> list[Candidate]:
        rid = trace.run_id
        config = await self.resolve_config(rag_config, kb_id)

        enhanced = await self._enhance(query, history, config)
        holder["enhanced"] = enhanced
        queries = get_all_search_queries(enhanced)
        trace.queries = queries

        with trace.stage("retrieve", len(queries)) as st:
            results = await asyncio.gather(*(
                self.retriever.retrieve(
                    q,
                    limit=config.search_limit,
                    threshold_hint=config.kb_threshold,
                    hybrid=config.hybrid_search_enabled,
                    kb_id=kb_id,
                )
                for q in queries
            ))
            retrieved = sum(sum(r.counts().values()) for r in results)
            st.output_count = retrieved
        for r in results:
            trace.retrieval.append({"query": r.query, **r.counts()})
            trace.errors.extend(r.errors)

        with trace.stage("fusion", retrieved) as st:
            per_query = []
            for r in results:
                fused, stats = self._fuse_one(r, config)
                per_query.append(fused)
                trace.fusion.extend(asdict(s) for s in stats)
                for s in stats:
                    logger.debug(
                        f"[{rid}] fusion | method={s.method} | vec={s.vec_count} | kw={s.kw_count} | "
                        f"fused={s.fused_count} | overlap={s.overlap}"
                    )
            st.record(sorted((c for lst in per_query for c in lst), key=lambda c: -c.score))

        if len(per_query) > 1:
            with trace.stage("merge", sum(len(lst) for lst in per_query)) as st:
                candidates = merge_variant_results(per_query, config.combine_method)
                st.record(candidates)
        else:
            candidates = per_query[0] if per_query else []

        with trace.stage("threshold", len(candidates)) as st:
            candidates = threshold_filter(candidates, config.kb_threshold, config.email_threshold)
            st.record(candidates)

        if config.temporal_decay_enabled:
            with trace.stage("decay", len(candidates)) as st:
                candidates = apply_temporal_decay(
                    candidates,
                    enabled=True,
                    half_life_days=config.half_life_days,
                    min_decay=config.min_decay,
                )
                st.record(candidates)

        with trace.stage("rerank", len(candidates)) as st:
            if config.reranking_enabled:
                candidates, rerank_stats = rerank(
                    query, candidates, RerankOptions.from_config(config)
                )
                logger.debug(
                    f"[{rid}] rerank | selection={rerank_stats.selection} | in={rerank_stats.input_count} | "
                    f"boosted={rerank_stats.boosted} | out={rerank_stats.final_count}"
                )
            else:
                candidates = candidates[:config.search_limit]
            st.record(candidates)

        with trace.stage("balance", len(candidates)) as st:
            candidates = balance(candidates, config.max_results, BalanceOptions.from_config(config))
            st.record(candidates)

        return candidates
