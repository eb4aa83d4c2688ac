"""
Keyword retrieval.

Two KeywordSearch backends:
- PostgresKeywordSearch: Postgres full-text search (websearch_to_tsquery +
  ts_rank_cd) over one chunk table per corpus.
- BM25Index: in-memory Okapi BM25 (rank_bm25) over a fixed document set.
  The HTTP service does not wire it; callers with small fixed corpora pass
  it to MultiSourceRetriever directly.

Backends raise on failure; the retriever owns the fail-open policy.
"""
import asyncio
import math
import re
from typing import Any, Iterable, Mapping, Protocol

import psycopg2
from rank_bm25 import BM25Okapi

from ragfusion.candidates import Candidate, Source
from ragfusion.config import settings
from ragfusion.errors import RetrievalError
from ragfusion.logging_config import get_logger

logger = get_logger(__name__)

STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
    "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
    "to", "was", "will", "with", "or", "but", "not", "have", "had",
    "over", "this", "can", "were", "been", "into", "would", "there",
})

_NON_WORD = re.compile(r"[^\w\s]")

BM25_K1 = 1.5
BM25_B = 0.75


class KeywordSearch(Protocol):
    """Lexical search over one corpus."""

    async def search(
        self,
        corpus: Source,
        query: str,
        limit: int,
        kb_id: str | None = None,
    ) -> list[dict]:
        ...


# ============== Postgres FTS ==============

def _get_fts_connection():
    """
    Get a Postgres connection for FTS queries.
    Returns None if DATABASE_URL not configured.
    """
    if not settings.database_url:
        return None
    return psycopg2.connect(settings.database_url)


class PostgresKeywordSearch:
    """
    KeywordSearch over Postgres FTS tables.

    Expected columns: id, kb_id, title, content, and sent_at on the email table.
    psycopg2 is blocking, so queries run in a worker thread.
    """

    def __init__(self, tables: dict[Source, str] | None = None, connect=None):
        self.tables = tables or {
            Source.KNOWLEDGE_BASE: f"{settings.fts_schema}.{settings.fts_kb_table}",
            Source.EMAIL: f"{settings.fts_schema}.{settings.fts_email_table}",
        }
        self._connect = connect or _get_fts_connection

    async def search(
        self,
        corpus: Source,
        query: str,
        limit: int,
        kb_id: str | None = None,
    ) -> list[dict]:
        if not query or not query.strip():
            return []
        fqtn = self.tables.get(corpus)
        if not fqtn:
            return []
        return await asyncio.to_thread(self._search_sync, fqtn, corpus, query, limit, kb_id)

    def _search_sync(
        self,
        fqtn: str,
        corpus: Source,
        query: str,
        limit: int,
        kb_id: str | None,
    ) -> list[dict]:
        conn = self._connect()
        if conn is None:
            raise RetrievalError(corpus.value, "keyword", "DATABASE_URL not configured")

        sent_at_col = "sent_at" if corpus == Source.EMAIL else "NULL"
        kb_clause = "AND kb_id = %s" if kb_id else ""

        # Rank using ts_rank_cd (cover density ranking) over title + content
        retrieve_sql = f"""
            SELECT
                id,
                title,
                content,
                {sent_at_col} AS sent_at,
                ts_rank_cd(
                    to_tsvector('english', coalesce(title, '') || ' ' || coalesce(content, '')),
                    websearch_to_tsquery('english', %s)
                ) AS rank
            FROM {fqtn}
            WHERE to_tsvector('english', coalesce(title, '') || ' ' || coalesce(content, ''))
                  @@ websearch_to_tsquery('english', %s)
              {kb_clause}
            ORDER BY rank DESC, id
            LIMIT %s
        """
        params: list[Any] = [query, query]
        if kb_id:
            params.append(kb_id)
        params.append(limit)

        try:
            cursor = conn.cursor()
            cursor.execute(retrieve_sql, params)
            rows = cursor.fetchall()
        finally:
            conn.close()

        results = []
        for row in rows:
            results.append({
                "id": str(row[0]),
                "title": row[1],
                "content": row[2],
                "sent_at": row[3],
                "score": float(row[4]) if row[4] is not None else 0.0,
            })
        return results


# ============== In-memory BM25 ==============

def tokenize_terms(text: str) -> list[str]:
    """Lowercase, punctuation to spaces, drop stopwords and tokens of length <= 2."""
    if not text:
        return []
    cleaned = _NON_WORD.sub(" ", text.lower())
    return [t for t in cleaned.split() if len(t) > 2 and t not in STOPWORDS]


def tokenize(text: str) -> list[str]:
    """tokenize_terms() with duplicates removed, first occurrence kept."""
    return list(dict.fromkeys(tokenize_terms(text)))


class OkapiBM25(BM25Okapi):
    """
    BM25Okapi with a non-negative idf:

        idf = ln((N - n + 0.5) / (n + 0.5) + 1)

    rank_bm25's default idf goes negative for terms in more than half the
    documents and is then floored at epsilon * average idf.
    """

    def _calc_idf(self, nd):
        for word, freq in nd.items():
            self.idf[word] = math.log((self.corpus_size - freq + 0.5) / (freq + 0.5) + 1)


class _Corpus:
    def __init__(self, documents: list[Mapping[str, Any]], k1: float, b: float):
        self.documents = documents
        self.model = OkapiBM25(
            [tokenize_terms(f"{doc.get('title') or ''} {doc.get('content') or ''}") for doc in documents],
            k1=k1,
            b=b,
        )


def _as_document(doc: Any) -> Mapping[str, Any]:
    if isinstance(doc, Candidate):
        return {
            "id": doc.id,
            "title": doc.title,
            "content": doc.content,
            "sent_at": doc.sent_at,
            "kb_id": doc.metadata.get("kb_id"),
        }
    return doc


class BM25Index:
    """KeywordSearch over in-memory documents (dicts with id/title/content/kb_id)."""

    def __init__(
        self,
        documents: Mapping[Source, Iterable[Any]] | None = None,
        k1: float = BM25_K1,
        b: float = BM25_B,
    ):
        self.k1 = k1
        self.b = b
        self._corpora: dict[Source, _Corpus] = {}
        for corpus, docs in (documents or {}).items():
            self.add_documents(corpus, docs)

    def add_documents(self, corpus: Source, documents: Iterable[Any]) -> None:
        existing = self._corpora[corpus].documents if corpus in self._corpora else []
        combined = existing + [_as_document(d) for d in documents]
        # BM25Okapi cannot index an empty corpus
        if combined:
            self._corpora[corpus] = _Corpus(combined, self.k1, self.b)

    def score(self, corpus: Source, query: str, kb_id: str | None = None) -> list[dict]:
        index = self._corpora.get(corpus)
        terms = tokenize(query)
        if index is None or not terms or index.model.avgdl == 0:
            return []

        results = []
        for doc, total in zip(index.documents, index.model.get_scores(terms)):
            if kb_id and doc.get("kb_id") not in (None, kb_id):
                continue
            if total > 0:
                results.append({**doc, "id": str(doc.get("id")), "score": float(total)})

        results.sort(key=lambda r: (-r["score"], r["id"]))
        return results

    async def search(
        self,
        corpus: Source,
        query: str,
        limit: int,
        kb_id: str | None = None,
    ) -> list[dict]:
        return self.score(corpus, query, kb_id=kb_id)[:limit]
