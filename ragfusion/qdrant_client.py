"""
Qdrant vector search, one collection per corpus.
"""
from functools import lru_cache
from typing import Protocol

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import FieldCondition, Filter, MatchValue

from ragfusion.candidates import Source
from ragfusion.config import settings
from ragfusion.logging_config import get_logger

logger = get_logger(__name__)


class VectorSearch(Protocol):
    """Nearest-neighbour search over one corpus."""

    async def search(
        self,
        corpus: Source,
        vector: list[float],
        limit: int,
        threshold_hint: float | None = None,
        kb_id: str | None = None,
    ) -> list[dict]:
        ...


@lru_cache(maxsize=1)
def get_qdrant_client() -> AsyncQdrantClient:
    """Return the shared async Qdrant client."""
    return AsyncQdrantClient(
        url=settings.qdrant_url,
        api_key=settings.qdrant_api_key,
    )


class QdrantVectorSearch:
    """
    VectorSearch backed by Qdrant.

    Knowledge-base and email chunks live in separate collections. Points are
    scoped to a knowledge base through a `kb_id` payload field when one is given.
    """

    def __init__(
        self,
        client: AsyncQdrantClient | None = None,
        collections: dict[Source, str] | None = None,
    ):
        self.client = client or get_qdrant_client()
        self.collections = collections or {
            Source.KNOWLEDGE_BASE: settings.qdrant_kb_collection,
            Source.EMAIL: settings.qdrant_email_collection,
        }

    async def search(
        self,
        corpus: Source,
        vector: list[float],
        limit: int,
        threshold_hint: float | None = None,
        kb_id: str | None = None,
    ) -> list[dict]:
        """
        Return raw hits as dicts: id, similarity, payload (text, title, sent_at, ...).

        Args:
            corpus: Which collection to search.
            vector: Query embedding.
            limit: Maximum hits.
            threshold_hint: Passed to Qdrant as score_threshold.
            kb_id: Optional knowledge base scope.
        """
        collection = self.collections.get(corpus)
        if not collection:
            return []

        query_filter = None
        if kb_id:
            query_filter = Filter(must=[FieldCondition(key="kb_id", match=MatchValue(value=kb_id))])

        response = await self.client.query_points(
            collection_name=collection,
            query=vector,
            query_filter=query_filter,
            limit=limit,
            score_threshold=threshold_hint,
            with_payload=True,
        )

        hits = []
        for point in response.points:
            hits.append({
                "id": str(point.id),
                "similarity": point.score,
                "payload": point.payload or {},
            })
        return hits
