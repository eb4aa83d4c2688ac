"""
Reranker module.

Runs after threshold filtering and temporal decay:

1. Semantic boost (optional): small, bounded lexical-overlap bonus for
   candidates that are already confident matches.
2. Exactly one diversity mechanism:
   - MMR: greedy relevance-vs-redundancy selection up to final_k
   - diversity filter: drop near-duplicates of already kept candidates
   - neither: truncate to final_k

Similarity between candidates is Jaccard overlap of content tokens, not
embeddings. MMR is O(n^2) in the pool size; pools here are ~2x max_results.
"""
from dataclasses import dataclass
from typing import Sequence

from ragfusion.candidates import BoostRecord, Candidate, DiversityRecord, MMRRecord
from ragfusion.errors import RerankError
from ragfusion.logging_config import get_logger
from ragfusion.rag_config import RAGConfig

logger = get_logger(__name__)


def _sort_key(c: Candidate) -> tuple:
    return (-c.score, c.id, c.source.value)


def tokenize(text: str) -> set[str]:
    """Lowercase whitespace tokens longer than 2 characters."""
    return {t for t in (text or "").lower().split() if len(t) > 2}


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """|A & B| / |A | B| over tokenize() sets; 0.0 when both are empty."""
    return _jaccard(tokenize(text_a), tokenize(text_b))


def _jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


@dataclass
class RerankOptions:
    """Reranker knobs, normally taken from the resolved RAGConfig."""
    final_k: int = 10
    semantic_boost: bool = True
    max_boost: float = 0.05
    min_boost_threshold: float = 0.30
    dynamic_boost: bool = False
    use_mmr: bool = False
    mmr_lambda: float = 0.7
    use_diversity_filter: bool = True
    diversity_threshold: float = 0.85

    @classmethod
    def from_config(cls, config: RAGConfig) -> "RerankOptions":
        return cls(
            final_k=config.search_limit,
            semantic_boost=config.semantic_boost_enabled,
            max_boost=config.max_boost,
            min_boost_threshold=config.min_boost_threshold,
            dynamic_boost=config.dynamic_boost,
            use_mmr=config.use_mmr,
            mmr_lambda=config.mmr_lambda,
            use_diversity_filter=config.use_diversity_filter,
            diversity_threshold=config.diversity_threshold,
        )


@dataclass
class RerankerStats:
    """Statistics from the rerank pipeline."""
    input_count: int
    boosted: int
    selection: str  # "mmr" | "diversity" | "truncate"
    after_selection: int
    final_count: int


# ============== Semantic boost ==============

def semantic_boost(
    query: str,
    candidates: Sequence[Candidate],
    max_boost: float = 0.05,
    min_boost_threshold: float = 0.30,
    dynamic: bool = False,
) -> list[Candidate]:
    """
    Add a bounded bonus proportional to how many query terms appear in the content.

    Query terms are distinct lowercase tokens longer than 2 characters; a term
    matches when it is a substring of the lowercased content.

        match_ratio = matched_terms / total_terms
        boost = min(match_ratio * max_boost, max_boost)
        dynamic: boost = min(match_ratio * max_boost * (1 + match_ratio), 2 * max_boost)
        score = clamp(score + boost, 0, 1)

    Candidates scoring below min_boost_threshold are left untouched. Output is
    re-sorted by score.
    """
    if max_boost < 0:
        raise RerankError(f"max_boost must be non-negative, got {max_boost}")

    terms = tokenize(query)
    boosted = []
    for c in candidates:
        content = (c.content or "").lower()
        matches = sum(1 for term in terms if term in content)
        match_ratio = matches / len(terms) if terms else 0.0

        if c.score < min_boost_threshold:
            boosted.append(c.with_score(c.score, BoostRecord(
                applied=False, input=c.score, output=c.score, match_ratio=match_ratio,
            )))
            continue

        if dynamic:
            boost = min(match_ratio * max_boost * (1 + match_ratio), 2 * max_boost)
        else:
            boost = min(match_ratio * max_boost, max_boost)
        new_score = max(0.0, min(1.0, c.score + boost))
        boosted.append(c.with_score(new_score, BoostRecord(
            applied=True, input=c.score, output=new_score, match_ratio=match_ratio, boost=boost,
        )))

    boosted.sort(key=_sort_key)
    return boosted


# ============== Diversity ==============

def mmr_select(
    candidates: Sequence[Candidate],
    final_k: int,
    mmr_lambda: float = 0.7,
) -> list[Candidate]:
    """
    Maximal Marginal Relevance selection.

    Repeatedly picks the remaining candidate maximizing
        mmr = lambda * relevance - (1 - lambda) * max_jaccard_to_selected
    clamped to [0, 1]. While nothing is selected, mmr = relevance exactly.
    Ties go to the earlier (higher-ranked) candidate. Returned in selection
    order with score = mmr score.
    """
    if final_k < 0:
        raise RerankError(f"final_k must be non-negative, got {final_k}")
    if not 0.0 <= mmr_lambda <= 1.0:
        raise RerankError(f"mmr_lambda must be in [0, 1], got {mmr_lambda}")

    remaining = [(c, tokenize(c.content)) for c in candidates]
    selected: list[tuple[Candidate, set[str]]] = []
    output: list[Candidate] = []

    while remaining and len(output) < final_k:
        best_idx = -1
        best = (0.0, 0.0, 0.0)  # (mmr, relevance, max_similarity)
        for idx, (c, tokens) in enumerate(remaining):
            relevance = c.score
            if not selected:
                max_sim = 0.0
                mmr = relevance
            else:
                max_sim = max(_jaccard(tokens, sel_tokens) for _, sel_tokens in selected)
                raw = mmr_lambda * relevance - (1 - mmr_lambda) * max_sim
                mmr = max(0.0, min(1.0, raw))
            if best_idx < 0 or mmr > best[0]:
                best_idx = idx
                best = (mmr, relevance, max_sim)

        chosen, tokens = remaining.pop(best_idx)
        selected.append((chosen, tokens))
        mmr, relevance, max_sim = best
        output.append(chosen.with_score(mmr, MMRRecord(
            lambda_=mmr_lambda, relevance=relevance, max_similarity=max_sim, output=mmr,
        )))

    return output


def diversity_filter(
    candidates: Sequence[Candidate],
    threshold: float = 0.85,
) -> list[Candidate]:
    """
    Keep the first candidate, then each later one only if its Jaccard
    similarity to every kept candidate is below threshold.
    """
    kept: list[tuple[Candidate, set[str]]] = []
    for c in candidates:
        tokens = tokenize(c.content)
        max_sim = max((_jaccard(tokens, k_tokens) for _, k_tokens in kept), default=0.0)
        if kept and max_sim >= threshold:
            logger.debug(f"diversity_filter dropped | id={c.id} | similarity={max_sim:.3f}")
            continue
        kept.append((c.with_score(c.score, DiversityRecord(
            threshold=threshold, max_similarity=max_sim, output=c.score,
        )), tokens))
    return [c for c, _ in kept]


# ============== Composition ==============

def rerank(
    query: str,
    candidates: Sequence[Candidate],
    options: RerankOptions | None = None,
) -> tuple[list[Candidate], RerankerStats]:
    """
    Full rerank pipeline: semantic boost -> MMR | diversity filter | truncate.

    Args:
        query: The user's original query, used for the lexical boost.
        candidates: Candidates sorted by score descending.
        options: RerankOptions (defaults when None).

    Returns:
        Tuple of (at most final_k candidates, RerankerStats).
    """
    if options is None:
        options = RerankOptions()
    if options.final_k < 0:
        raise RerankError(f"final_k must be non-negative, got {options.final_k}")

    input_count = len(candidates)
    ranked = list(candidates)

    boosted = 0
    if options.semantic_boost:
        ranked = semantic_boost(
            query,
            ranked,
            max_boost=options.max_boost,
            min_boost_threshold=options.min_boost_threshold,
            dynamic=options.dynamic_boost,
        )
        boosted = sum(1 for c in ranked if c.score_history[-1].applied)

    if options.use_mmr:
        selection = "mmr"
        ranked = mmr_select(ranked, options.final_k, options.mmr_lambda)
        after_selection = len(ranked)
    elif options.use_diversity_filter:
        selection = "diversity"
        ranked = diversity_filter(ranked, options.diversity_threshold)
        after_selection = len(ranked)
        ranked = ranked[:options.final_k]
    else:
        selection = "truncate"
        after_selection = len(ranked)
        ranked = ranked[:options.final_k]

    stats = RerankerStats(
        input_count=input_count,
        boosted=boosted,
        selection=selection,
        after_selection=after_selection,
        final_count=len(ranked),
    )
    return ranked, stats
