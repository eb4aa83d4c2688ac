"""
Context building for the chat prompt from ranked candidates.
"""
import dataclasses
import math
from typing import Sequence

from ragfusion.candidates import Candidate, Source
from ragfusion.logging_config import get_logger
from ragfusion.models import ContextSource

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4
SNIPPET_CHARS = 250

SOURCE_LABELS = {
    Source.KNOWLEDGE_BASE: "Knowledge Base",
    Source.EMAIL: "Email",
    Source.OTHER: "Other",
}


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def _truncate_text(text: str, max_tokens: int) -> str:
    """Cut text to about max_tokens, at a sentence end when one is near the limit."""
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    truncated = text[:max_chars]
    last_period = truncated.rfind(".")
    if last_period > max_chars * 0.8:
        return truncated[:last_period + 1]
    return truncated + "..."


def truncate_to_token_budget(candidates: Sequence[Candidate], max_tokens: int) -> list[Candidate]:
    """
    Keep leading candidates whose estimated tokens fit in max_tokens.

    If even the first candidate does not fit, it is kept with its content cut
    to the budget.
    """
    kept: list[Candidate] = []
    used = 0
    for c in candidates:
        tokens = estimate_tokens(c.content)
        if used + tokens > max_tokens:
            if not kept:
                kept.append(dataclasses.replace(c, content=_truncate_text(c.content, max_tokens)))
            break
        kept.append(c)
        used += tokens

    logger.debug(f"context truncated | in={len(candidates)} | out={len(kept)} | tokens={used}")
    return kept


def build_context(candidates: Sequence[Candidate]) -> tuple[str, list[ContextSource]]:
    """
    Build the context string and sources list from ranked candidates.

    Each block reads `[i] <title> (<source>):` followed by the content.
    """
    if not candidates:
        return "", []

    context_blocks: list[str] = []
    sources: list[ContextSource] = []

    for index, c in enumerate(candidates, start=1):
        title = c.title or f"Context {index}"
        label = SOURCE_LABELS.get(c.source, "Knowledge Base")
        context_blocks.append(f"[{index}] {title} ({label}):\n{c.content}")

        snippet = c.content[:SNIPPET_CHARS] + "..." if len(c.content) > SNIPPET_CHARS else c.content
        sources.append(
            ContextSource(
                id=c.id,
                source=c.source.value,
                title=c.title,
                snippet=snippet,
                score=c.score,
                sent_at=c.sent_at,
            )
        )

    context = "\n\n".join(context_blocks)
    return context, sources
