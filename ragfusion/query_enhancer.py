"""
Query enhancement.

Rewrites a user query before retrieval:
- context injection: standalone rewrite using the last N conversation turns
- HyDE: hypothetical answer document, used only as an extra search target
- multi-query: N paraphrases of the (context-enhanced) query

Each step is toggled and fails independently. With fallback_on_error (the
default) a failing step degrades: the enhanced query falls back to the
original, the HyDE document to None, the variants to [enhanced_query].
Otherwise the EnhancementError propagates.
"""
import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from ragfusion.errors import EnhancementError
from ragfusion.llm_client import TextGenerator
from ragfusion.logging_config import get_logger
from ragfusion.logging_utils import truncate_error
from ragfusion.rag_config import (
    DEFAULT_CONTEXT_PROMPT,
    DEFAULT_HYDE_PROMPT,
    DEFAULT_MULTI_QUERY_PROMPT,
    RAGConfig,
)

logger = get_logger(__name__)

# (temperature, max_tokens) per step
HYDE_PARAMS = (0.7, 300)
VARIANT_PARAMS = (0.8, 200)
CONTEXT_PARAMS = (0.3, 150)

FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
JSON_ARRAY = re.compile(r"\[.*\]", re.DOTALL)
LIST_MARKER = re.compile(r"^(?:\d+[.)]|[-*•])\s*")


@dataclass
class EnhancedQuery:
    original_query: str
    enhanced_query: str
    hyde_document: str | None = None
    query_variants: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.query_variants:
            self.query_variants = [self.original_query]


@dataclass
class EnhancementOptions:
    enabled: bool = True
    use_conversation_context: bool = True
    max_context_messages: int = 3
    fallback_on_error: bool = True
    hyde: bool = False
    multi_query: bool = False
    query_variants: int = 3
    hyde_prompt: str = DEFAULT_HYDE_PROMPT
    multi_query_prompt: str = DEFAULT_MULTI_QUERY_PROMPT
    context_prompt: str = DEFAULT_CONTEXT_PROMPT

    @classmethod
    def from_config(cls, config: RAGConfig) -> "EnhancementOptions":
        return cls(
            enabled=config.query_enhancement_enabled,
            use_conversation_context=config.use_conversation_context,
            max_context_messages=config.max_context_messages,
            fallback_on_error=config.fallback_on_error,
            hyde=config.hyde_enabled,
            multi_query=config.multi_query_enabled,
            query_variants=config.query_variants,
            hyde_prompt=config.hyde_prompt,
            multi_query_prompt=config.multi_query_prompt,
            context_prompt=config.context_prompt,
        )


def _turn_fields(turn: Any) -> tuple[str, str]:
    """(role, content) from a ConversationTurn-like object or a dict."""
    if isinstance(turn, dict):
        role = turn.get("role") or turn.get("sender") or "user"
        content = turn.get("content") or ""
    else:
        role = getattr(turn, "role", None) or getattr(turn, "sender", None) or "user"
        content = getattr(turn, "content", None) or ""
    return str(role), str(content)


def format_history(history: Sequence[Any], max_messages: int) -> str:
    """Render the last max_messages turns as `role: content` lines."""
    if max_messages <= 0:
        return ""
    recent = list(history)[-max_messages:]
    return "\n".join(f"{role}: {content}" for role, content in map(_turn_fields, recent))


def _string_items(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def parse_query_variants(text: str, count: int) -> list[str]:
    """
    Parse LLM output into at most `count` query variants.

    Tried in order: the whole text as a JSON array, a markdown-fenced JSON
    array, the first bracketed array in the text, then one variant per line
    with list markers (1. / 1) / - / *) and surrounding quotes stripped.
    """
    content = (text or "").strip()
    if not content:
        return []

    candidates = [content]
    candidates.extend(m.strip() for m in FENCED_BLOCK.findall(content))
    bracketed = JSON_ARRAY.search(content)
    if bracketed:
        candidates.append(bracketed.group(0))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        items = _string_items(parsed)
        if items is not None:
            return items[:count]

    variants = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith(("[", "]", "```")):
            continue
        line = LIST_MARKER.sub("", line).strip()
        line = line.strip("\"'").rstrip(",").strip("\"'").strip()
        if line:
            variants.append(line)
    return variants[:count]


def get_all_search_queries(result: EnhancedQuery) -> list[str]:
    """
    Fan-out list for retrieval: distinct non-empty strings from
    enhanced_query, hyde_document and query_variants, in first-seen order.
    Falls back to [original_query].
    """
    seen: set[str] = set()
    queries = []
    for q in [result.enhanced_query, result.hyde_document, *result.query_variants]:
        if not q or not q.strip() or q in seen:
            continue
        seen.add(q)
        queries.append(q)
    return queries or [result.original_query]


class QueryEnhancer:
    """Context injection, HyDE and multi-query over a TextGenerator."""

    def __init__(self, generator: TextGenerator):
        self.generator = generator

    async def inject_context(self, query: str, history: Sequence[Any], options: EnhancementOptions) -> str:
        history_text = format_history(history, options.max_context_messages)
        if not history_text:
            return query
        prompt = (
            options.context_prompt
            .replace("{{HISTORY}}", history_text)
            .replace("{{QUERY}}", query)
        )
        try:
            rewritten = await self.generator.generate(prompt, *CONTEXT_PARAMS)
        except Exception as e:
            raise EnhancementError("context", truncate_error(e)) from e
        rewritten = (rewritten or "").strip()
        if not rewritten:
            raise EnhancementError("context", "empty rewrite")
        return rewritten

    async def generate_hyde(self, query: str, options: EnhancementOptions) -> str:
        prompt = options.hyde_prompt.replace("{{QUERY}}", query)
        try:
            document = await self.generator.generate(prompt, *HYDE_PARAMS)
        except Exception as e:
            raise EnhancementError("hyde", truncate_error(e)) from e
        document = (document or "").strip()
        if not document:
            raise EnhancementError("hyde", "empty document")
        return document

    async def generate_variants(self, query: str, options: EnhancementOptions) -> list[str]:
        count = options.query_variants
        prompt = (
            options.multi_query_prompt
            .replace("{{COUNT}}", str(count))
            .replace("{{QUERY}}", query)
        )
        try:
            text = await self.generator.generate(prompt, *VARIANT_PARAMS)
        except Exception as e:
            raise EnhancementError("multi_query", truncate_error(e)) from e
        variants = parse_query_variants(text, count)
        if not variants:
            raise EnhancementError("multi_query", "no variants parsed")
        return variants

    async def enhance(
        self,
        query: str,
        history: Sequence[Any] | None = None,
        options: EnhancementOptions | None = None,
    ) -> EnhancedQuery:
        """
        Run the enabled enhancement steps.

        Returns:
            EnhancedQuery with non-empty query_variants.

        Raises:
            EnhancementError: A step failed and fallback_on_error is False.
        """
        if options is None:
            options = EnhancementOptions()
        history = list(history or [])
        result = EnhancedQuery(original_query=query, enhanced_query=query)

        if not options.enabled:
            return result

        if options.use_conversation_context and history:
            try:
                result.enhanced_query = await self.inject_context(query, history, options)
                logger.debug(f"query_enhance context | original={query!r} | enhanced={result.enhanced_query!r}")
            except EnhancementError as e:
                if not options.fallback_on_error:
                    raise
                logger.warning(f"query_enhance context failed, using original query | err={e}")

        # HyDE and variants both depend only on the enhanced query
        steps = {}
        if options.hyde:
            steps["hyde"] = self.generate_hyde(result.enhanced_query, options)
        if options.multi_query:
            steps["multi_query"] = self.generate_variants(result.enhanced_query, options)
        outcomes = await asyncio.gather(*steps.values(), return_exceptions=True)

        for step, outcome in zip(steps.keys(), outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, EnhancementError):
                    raise outcome
                if not options.fallback_on_error:
                    raise outcome
                logger.warning(f"query_enhance {step} failed | err={outcome}")
                if step == "multi_query":
                    result.query_variants = [result.enhanced_query]
                continue
            if step == "hyde":
                result.hyde_document = outcome
            else:
                result.query_variants = outcome

        logger.debug(
            f"query_enhance | context={result.enhanced_query != query} | "
            f"hyde={result.hyde_document is not None} | variants={len(result.query_variants)}"
        )
        return result
