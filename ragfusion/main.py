import logging
import secrets
import time
from functools import lru_cache

import sentry_sdk
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from sentry_sdk.integrations.fastapi import FastApiIntegration
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ragfusion.config import settings
from ragfusion.config_store import InMemoryRAGConfigStore, PostgresRAGConfigStore
from ragfusion.context import build_context, truncate_to_token_budget
from ragfusion.keyword_retrieval import PostgresKeywordSearch
from ragfusion.llm_client import OpenAIEmbeddingProvider, OpenAITextGenerator
from ragfusion.logging_config import get_logger, setup_logging
from ragfusion.logging_utils import new_request_id, request_id_ctx
from ragfusion.models import CandidateOut, RetrieveRequest, RetrieveResponse
from ragfusion.pipeline import RetrievalPipeline
from ragfusion.qdrant_client import QdrantVectorSearch
from ragfusion.query_enhancer import QueryEnhancer
from ragfusion.retriever import MultiSourceRetriever

logger = get_logger(__name__)


# ============== Rate Limiting ==============

limiter = Limiter(key_func=get_remote_address)


# ============== Security ==============

def verify_api_key(x_api_key: str | None = Header(None, alias="X-API-Key")):
    """
    Verify API key for protected endpoints.
    If API_KEY is not configured, authentication is disabled (for development).
    """
    if not settings.api_key:
        return True

    if not x_api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Provide X-API-Key header.",
        )

    # Use constant-time comparison to prevent timing attacks
    if not secrets.compare_digest(x_api_key, settings.api_key):
        raise HTTPException(
            status_code=401,
            detail="Invalid API key.",
        )

    return True


# ============== Pipeline wiring ==============

@lru_cache(maxsize=1)
def get_pipeline() -> RetrievalPipeline:
    """Build the process-wide pipeline from settings."""
    embedder = OpenAIEmbeddingProvider()
    retriever = MultiSourceRetriever(
        embedder=embedder,
        vector_search=QdrantVectorSearch(),
        keyword_search=PostgresKeywordSearch() if settings.database_url else None,
    )
    config_store = PostgresRAGConfigStore() if settings.database_url else InMemoryRAGConfigStore()
    return RetrievalPipeline(
        retriever=retriever,
        enhancer=QueryEnhancer(OpenAITextGenerator()),
        config_store=config_store,
    )


# ============== App ==============

app = FastAPI(title="ragfusion API")
setup_logging(settings.log_level, log_stages=settings.log_stages)


def _sentry_before_send(event, hint):
    req = event.get("request") or {}
    # Remove request body & cookies
    req.pop("data", None)
    req.pop("cookies", None)
    headers = req.get("headers") or {}
    headers.pop("authorization", None)
    headers.pop("x-api-key", None)
    req["headers"] = headers
    event["request"] = req
    return event


if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        integrations=[FastApiIntegration()],
        environment=settings.sentry_environment,
        send_default_pii=False,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        before_send=_sentry_before_send,
    )


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or new_request_id()
    token = request_id_ctx.set(rid)

    start = time.time()
    try:
        response = await call_next(request)
        duration_ms = int((time.time() - start) * 1000)

        response.headers["X-Request-ID"] = rid

        logging.getLogger("ragfusion.request").info(
            "%s %s -> %s (%dms)",
            request.method,
            request.url.path,
            getattr(response, "status_code", "?"),
            duration_ms,
        )
        return response
    finally:
        request_id_ctx.reset(token)


app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


# ============== Endpoints ==============

@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/retrieve", response_model=RetrieveResponse)
@limiter.limit(settings.rate_limit_retrieve)
async def retrieve(
    request: Request,
    body: RetrieveRequest,
    _: bool = Depends(verify_api_key),
    pipeline: RetrievalPipeline = Depends(get_pipeline),
):
    """
    Run retrieve_and_rank for a query. Never fails on retrieval errors:
    an unusable pipeline run yields an empty result list.
    """
    result = await pipeline.run(
        body.query,
        conversation_history=body.conversation_history,
        rag_config=body.rag_config,
        kb_id=body.kb_id,
    )

    candidates = result.candidates
    if body.max_context_tokens:
        candidates = truncate_to_token_budget(candidates, body.max_context_tokens)
    context, sources = build_context(candidates)

    return RetrieveResponse(
        results=[CandidateOut.from_candidate(c) for c in result.candidates],
        context=context,
        sources=sources,
        enhanced_query=result.enhanced.enhanced_query if result.enhanced else None,
        queries=result.trace.queries,
        trace=result.trace.to_dict() if body.include_trace else None,
    )
