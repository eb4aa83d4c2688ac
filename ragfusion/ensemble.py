"""
Ensemble balancing: pick the final top-K while keeping any one source from
dominating the context.

Quotas (limit = number of results to return):
    max_email = floor(limit * max_email_ratio)
    max_kb    = floor(limit * max_kb_ratio)

1. Walk candidates in score order. Email / knowledge-base candidates are
   admitted while their source is under its max quota, otherwise parked in
   that source's overflow queue. Other sources have no quota.
2. Top up from overflow to reach min_email_results, then min_kb_results.
3. Fill any remaining slots alternately from the overflow queues, email first.

Admitted candidates are appended in the order above; nothing is re-sorted.
"""
import math
from collections import deque
from dataclasses import dataclass
from typing import Sequence

from ragfusion.candidates import BalanceRecord, Candidate, Source
from ragfusion.errors import RerankError
from ragfusion.logging_config import get_logger
from ragfusion.rag_config import RAGConfig

logger = get_logger(__name__)


@dataclass
class BalanceOptions:
    enabled: bool = True
    min_email_results: int = 1
    min_kb_results: int = 1
    max_email_ratio: float = 0.2
    max_kb_ratio: float = 0.8

    @classmethod
    def from_config(cls, config: RAGConfig) -> "BalanceOptions":
        return cls(
            enabled=config.ensemble_enabled,
            min_email_results=config.min_email_results,
            min_kb_results=config.min_kb_results,
            max_email_ratio=config.max_email_ratio,
            max_kb_ratio=config.max_kb_ratio,
        )


def _admit(c: Candidate, how: str) -> Candidate:
    return c.with_score(c.score, BalanceRecord(admitted_by=how, output=c.score))


def balance(
    candidates: Sequence[Candidate],
    limit: int,
    options: BalanceOptions | None = None,
) -> list[Candidate]:
    """
    Select at most `limit` candidates honoring per-source quotas.

    Args:
        candidates: Candidates sorted by score descending.
        limit: Maximum number of results.
        options: Quota settings; disabled balancing is a plain truncation.

    Returns:
        min(limit, len(candidates)) candidates.
    """
    if options is None:
        options = BalanceOptions()
    if limit < 0:
        raise RerankError(f"limit must be non-negative, got {limit}")

    if not options.enabled:
        return [_admit(c, "truncate") for c in candidates[:limit]]

    max_email = math.floor(limit * options.max_email_ratio)
    max_kb = math.floor(limit * options.max_kb_ratio)

    selected: list[Candidate] = []
    counts = {Source.EMAIL: 0, Source.KNOWLEDGE_BASE: 0}
    quotas = {Source.EMAIL: max_email, Source.KNOWLEDGE_BASE: max_kb}
    overflow: dict[Source, deque[Candidate]] = {Source.EMAIL: deque(), Source.KNOWLEDGE_BASE: deque()}

    for c in candidates:
        if len(selected) >= limit:
            break
        if c.source in quotas:
            if counts[c.source] < quotas[c.source]:
                selected.append(_admit(c, "quota"))
                counts[c.source] += 1
            else:
                overflow[c.source].append(c)
            continue
        selected.append(_admit(c, "unrestricted"))

    for source, minimum in (
        (Source.EMAIL, options.min_email_results),
        (Source.KNOWLEDGE_BASE, options.min_kb_results),
    ):
        pool = overflow[source]
        while len(selected) < limit and counts[source] < minimum and pool:
            selected.append(_admit(pool.popleft(), "minimum"))
            counts[source] += 1

    turn = Source.EMAIL
    while len(selected) < limit and (overflow[Source.EMAIL] or overflow[Source.KNOWLEDGE_BASE]):
        other = Source.KNOWLEDGE_BASE if turn == Source.EMAIL else Source.EMAIL
        pool = overflow[turn] if overflow[turn] else overflow[other]
        c = pool.popleft()
        selected.append(_admit(c, "overflow"))
        counts[c.source] += 1
        turn = other

    logger.debug(
        f"ensemble_balance | limit={limit} | max_email={max_email} | max_kb={max_kb} | "
        f"email={counts[Source.EMAIL]} | kb={counts[Source.KNOWLEDGE_BASE]} | "
        f"selected={len(selected)} | in={len(candidates)}"
    )
    return selected
