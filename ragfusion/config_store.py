"""
Stored per-knowledge-base RAG configuration.

The store returns the raw `rag_config` mapping for a knowledge base; layering
with explicit overrides and defaults happens in rag_config.resolve_rag_config.
Lookups are fail-open: a store failure means "no stored config".
"""
import asyncio
import json
from typing import Any, Mapping, Protocol

import psycopg2
import sentry_sdk

from ragfusion.config import settings
from ragfusion.logging_config import get_logger
from ragfusion.logging_utils import truncate_error

logger = get_logger(__name__)


class RAGConfigStore(Protocol):
    async def get(self, kb_id: str) -> Mapping[str, Any] | None:
        ...


class InMemoryRAGConfigStore:
    """Dict-backed store for local runs and tests."""

    def __init__(self, configs: Mapping[str, Mapping[str, Any]] | None = None):
        self._configs = dict(configs or {})

    def set(self, kb_id: str, config: Mapping[str, Any]) -> None:
        self._configs[kb_id] = dict(config)

    async def get(self, kb_id: str) -> Mapping[str, Any] | None:
        return self._configs.get(kb_id)


class PostgresRAGConfigStore:
    """Reads the `rag_config` JSONB column of the knowledge base row."""

    def __init__(self, database_url: str | None = None, table: str | None = None):
        self.database_url = database_url or settings.database_url
        self.table = table or settings.rag_config_table

    async def get(self, kb_id: str) -> Mapping[str, Any] | None:
        if not kb_id or not self.database_url:
            return None
        try:
            return await asyncio.to_thread(self._get_sync, kb_id)
        except Exception as e:
            logger.warning(
                f"rag_config lookup failed | table={self.table} | kb_id={kb_id} | "
                f"err={truncate_error(e)}"
            )
            sentry_sdk.capture_exception(e)
            return None

    def _get_sync(self, kb_id: str) -> Mapping[str, Any] | None:
        conn = psycopg2.connect(self.database_url)
        try:
            cursor = conn.cursor()
            cursor.execute(f"SELECT rag_config FROM {self.table} WHERE id = %s", (kb_id,))
            row = cursor.fetchone()
        finally:
            conn.close()

        if row is None or row[0] is None:
            return None
        value = row[0]
        # json/text columns come back as str, jsonb as dict
        if isinstance(value, str):
            value = json.loads(value)
        if not isinstance(value, Mapping):
            logger.warning(f"rag_config ignored | kb_id={kb_id} | type={type(value).__name__}")
            return None
        return value
