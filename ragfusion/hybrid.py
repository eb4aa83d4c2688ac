"""
Hybrid fusion module.

Combines vector and keyword result lists for one query string, then merges
the per-query lists produced by several query variants.

Per-query fusion (selectable):
- RRF: score = sum(1 / (k + rank)) over every list containing the candidate,
  rank 1-indexed, k default 60.
- Weighted: normalize each list, then
  score = vector_weight * norm_vector + bm25_weight * norm_bm25
  (0 for a list the candidate is absent from).

Cross-variant merge groups by candidate identity and combines with
max (default), average or sum (sum clamped to 1.0).

All functions are pure: inputs are never modified, results are new Candidate
copies with a FusionRecord / MergeRecord appended.
"""
import math
import re
from dataclasses import dataclass
from typing import Sequence

from ragfusion.candidates import Candidate, FusionRecord, MergeRecord
from ragfusion.errors import FusionError
from ragfusion.logging_config import get_logger

logger = get_logger(__name__)

FUSION_METHODS = ("rrf", "weighted")
NORMALIZATION_METHODS = ("robust", "min-max", "z-score", "none")
COMBINE_METHODS = ("max", "average", "sum")

QUESTION_WORDS = re.compile(
    r"\b(what|how|why|when|where|who|which|can|is|are|do|does)\b", re.IGNORECASE
)
QUOTED_PHRASE = re.compile(r'"[^"]+"')


@dataclass
class FusionStats:
    """Statistics from one per-query fusion, for logging and the trace."""
    method: str
    vec_count: int
    kw_count: int
    fused_count: int
    vec_only: int   # Candidates appearing only in vector results
    kw_only: int    # Candidates appearing only in keyword results
    overlap: int    # Candidates appearing in both
    vector_weight: float | None = None
    bm25_weight: float | None = None


@dataclass
class NormalizedScores:
    """Output of normalize_scores: one value per input score, in input order."""
    values: list[float]
    method: str
    single_result: bool = False
    identical_scores: bool = False


def _sort_key(c: Candidate) -> tuple:
    # Descending score, then id for deterministic ties
    return (-c.score, c.id, c.source.value)


def _vector_value(c: Candidate) -> float:
    return c.similarity if c.similarity is not None else c.score


def _dedupe(candidates: Sequence[Candidate]) -> list[Candidate]:
    """Keep the first (best-ranked) occurrence of each candidate in one list."""
    seen: set[tuple[str, str]] = set()
    out = []
    for c in candidates:
        if c.key not in seen:
            seen.add(c.key)
            out.append(c)
    return out


def _build_stats(
    method: str,
    vec: list[Candidate],
    kw: list[Candidate],
    fused_count: int,
    vector_weight: float | None = None,
    bm25_weight: float | None = None,
) -> FusionStats:
    vec_ids = {c.key for c in vec}
    kw_ids = {c.key for c in kw}
    return FusionStats(
        method=method,
        vec_count=len(vec),
        kw_count=len(kw),
        fused_count=fused_count,
        vec_only=len(vec_ids - kw_ids),
        kw_only=len(kw_ids - vec_ids),
        overlap=len(vec_ids & kw_ids),
        vector_weight=vector_weight,
        bm25_weight=bm25_weight,
    )


# ============== Normalization ==============

def normalize_scores(scores: Sequence[float], method: str = "min-max") -> NormalizedScores:
    """
    Normalize a list of scores.

    Methods:
        min-max: (s - min) / (max - min)
        z-score: sigmoid((s - mean) / stddev), population stddev
        none:    scores unchanged

    Edge cases (min-max and z-score): a single score maps to 1.0; all-identical
    scores map to 1.0 and set identical_scores.

    Raises:
        FusionError: Unknown method.
    """
    if method not in ("min-max", "z-score", "none"):
        raise FusionError(f"Unknown normalization method: {method!r}")

    values = [float(s) for s in scores]
    if not values:
        return NormalizedScores(values=[], method=method)

    if method == "none":
        return NormalizedScores(values=values, method=method)

    if len(values) == 1:
        return NormalizedScores(values=[1.0], method=method, single_result=True)

    if method == "min-max":
        lo, hi = min(values), max(values)
        spread = hi - lo
        if spread == 0:
            return NormalizedScores(values=[1.0] * len(values), method=method, identical_scores=True)
        return NormalizedScores(values=[(s - lo) / spread for s in values], method=method)

    mean = sum(values) / len(values)
    variance = sum((s - mean) ** 2 for s in values) / len(values)
    std_dev = math.sqrt(variance)
    if std_dev == 0:
        return NormalizedScores(values=[1.0] * len(values), method=method, identical_scores=True)
    return NormalizedScores(
        values=[1.0 / (1.0 + math.exp(-((s - mean) / std_dev))) for s in values],
        method=method,
    )


# ============== Adaptive weights ==============

def detect_query_type(query: str) -> str:
    """Classify a query as "keyword", "semantic" or "mixed"."""
    word_count = len(query.split())
    if word_count <= 3 or QUOTED_PHRASE.search(query):
        return "keyword"
    if word_count >= 7 and QUESTION_WORDS.search(query):
        return "semantic"
    return "mixed"


def _mean_variance(scores: list[float]) -> tuple[float, float]:
    if not scores:
        return 0.0, 0.0
    mean = sum(scores) / len(scores)
    return mean, sum((s - mean) ** 2 for s in scores) / len(scores)


def calculate_adaptive_weights(
    vector_results: Sequence[Candidate],
    keyword_results: Sequence[Candidate],
    query: str,
    vector_weight: float = 0.6,
    bm25_weight: float = 0.4,
) -> tuple[float, float]:
    """
    Shift fusion weights toward the method that looks more reliable for this query.

    Adjustments to the configured weights:
    - +/-0.05 toward vector when its mean score is higher, else toward bm25
    - +/-0.03 toward vector when its score variance is lower, else toward bm25
    - +/-0.1 toward bm25 for keyword queries, toward vector for semantic ones
    Each weight is clamped to [0.3, 0.7], then both are renormalized to sum to 1.

    Returns:
        (vector_weight, bm25_weight)
    """
    vec_mean, vec_var = _mean_variance([_vector_value(c) for c in vector_results])
    kw_mean, kw_var = _mean_variance([c.score for c in keyword_results])
    query_type = detect_query_type(query)

    shift = 0.0  # positive favors vector
    shift += 0.05 if vec_mean > kw_mean else -0.05
    shift += 0.03 if vec_var < kw_var else -0.03
    if query_type == "keyword":
        shift -= 0.1
    elif query_type == "semantic":
        shift += 0.1

    vw = max(0.3, min(0.7, vector_weight + shift))
    bw = max(0.3, min(0.7, bm25_weight - shift))
    total = vw + bw

    logger.debug(
        f"adaptive_weights | query_type={query_type} | vec_mean={vec_mean:.3f} | "
        f"kw_mean={kw_mean:.3f} | shift={shift:+.2f} | vector={vw / total:.3f} | bm25={bw / total:.3f}"
    )
    return vw / total, bw / total


# ============== Per-query fusion ==============

def rrf_fuse(
    vector_results: Sequence[Candidate],
    keyword_results: Sequence[Candidate],
    rrf_k: int = 60,
) -> tuple[list[Candidate], FusionStats]:
    """
    Fuse vector and keyword results using Reciprocal Rank Fusion.

    A candidate in both lists keeps the vector copy (it carries the similarity).
    Absent-from-list ranks are recorded as None.

    Returns:
        Tuple of (fused candidates sorted by score desc then id, stats).
    """
    if rrf_k <= 0:
        raise FusionError(f"rrf_k must be positive, got {rrf_k}")

    vec = _dedupe(vector_results)
    kw = _dedupe(keyword_results)

    vec_ranks = {c.key: rank for rank, c in enumerate(vec, start=1)}
    kw_ranks = {c.key: rank for rank, c in enumerate(kw, start=1)}
    kw_lookup = {c.key: c for c in kw}

    bodies: dict[tuple[str, str], Candidate] = {c.key: c for c in vec}
    for c in kw:
        bodies.setdefault(c.key, c)

    fused = []
    for key, body in bodies.items():
        vec_rank = vec_ranks.get(key)
        kw_rank = kw_ranks.get(key)
        score = 0.0
        if vec_rank is not None:
            score += 1.0 / (rrf_k + vec_rank)
        if kw_rank is not None:
            score += 1.0 / (rrf_k + kw_rank)

        kw_hit = kw_lookup.get(key)
        fused.append(body.with_score(score, FusionRecord(
            method="rrf",
            output=score,
            vector_score=_vector_value(body) if vec_rank is not None else None,
            keyword_score=kw_hit.score if kw_hit is not None else None,
            vector_rank=vec_rank,
            keyword_rank=kw_rank,
        )))

    fused.sort(key=_sort_key)
    return fused, _build_stats("rrf", vec, kw, len(fused))


def weighted_fuse(
    vector_results: Sequence[Candidate],
    keyword_results: Sequence[Candidate],
    vector_weight: float = 0.6,
    bm25_weight: float = 0.4,
    normalization_method: str = "robust",
) -> tuple[list[Candidate], FusionStats]:
    """
    Fuse vector and keyword results with normalized, weighted scores.

    normalization_method "robust" passes vector similarities through (cosine is
    already bounded) and z-score normalizes the unbounded BM25 scores; any other
    method is applied to both lists.

    Returns:
        Tuple of (fused candidates sorted by score desc then id, stats).
    """
    if normalization_method not in NORMALIZATION_METHODS:
        raise FusionError(f"Unknown normalization method: {normalization_method!r}")

    vec = _dedupe(vector_results)
    kw = _dedupe(keyword_results)

    if normalization_method == "robust":
        vec_norm = NormalizedScores(values=[_vector_value(c) for c in vec], method="passthrough")
        kw_norm = normalize_scores([c.score for c in kw], "z-score")
    else:
        vec_norm = normalize_scores([_vector_value(c) for c in vec], normalization_method)
        kw_norm = normalize_scores([c.score for c in kw], normalization_method)

    vec_map = {c.key: v for c, v in zip(vec, vec_norm.values)}
    kw_map = {c.key: v for c, v in zip(kw, kw_norm.values)}
    kw_lookup = {c.key: c for c in kw}

    bodies: dict[tuple[str, str], Candidate] = {c.key: c for c in vec}
    for c in kw:
        bodies.setdefault(c.key, c)

    fused = []
    for key, body in bodies.items():
        vec_score = vec_map.get(key)
        kw_score = kw_map.get(key)
        score = (vec_score or 0.0) * vector_weight + (kw_score or 0.0) * bm25_weight

        kw_hit = kw_lookup.get(key)
        identical = (vec_score is not None and vec_norm.identical_scores) or (
            kw_score is not None and kw_norm.identical_scores
        )
        fused.append(body.with_score(score, FusionRecord(
            method="weighted",
            output=score,
            vector_score=_vector_value(body) if vec_score is not None else None,
            keyword_score=kw_hit.score if kw_hit is not None else None,
            vector_normalized=vec_score,
            keyword_normalized=kw_score,
            vector_weight=vector_weight,
            bm25_weight=bm25_weight,
            identical_scores=identical,
        )))

    fused.sort(key=_sort_key)
    return fused, _build_stats("weighted", vec, kw, len(fused), vector_weight, bm25_weight)


def vector_only(vector_results: Sequence[Candidate]) -> tuple[list[Candidate], FusionStats]:
    """Pass vector similarities through unchanged when there is nothing to fuse with."""
    vec = _dedupe(vector_results)
    fused = []
    for c in vec:
        value = _vector_value(c)
        fused.append(c.with_score(value, FusionRecord(
            method="vector_only",
            output=value,
            vector_score=value,
        )))
    fused.sort(key=_sort_key)
    return fused, _build_stats("vector_only", vec, [], len(fused))


def fuse(
    vector_results: Sequence[Candidate],
    keyword_results: Sequence[Candidate],
    method: str = "weighted",
    query: str = "",
    vector_weight: float = 0.6,
    bm25_weight: float = 0.4,
    rrf_k: int = 60,
    normalization_method: str = "robust",
    adaptive_weights: bool = False,
) -> tuple[list[Candidate], FusionStats]:
    """
    Fuse one query's vector and keyword lists with the configured method.

    Without keyword results the vector similarities pass through unchanged.

    Raises:
        FusionError: Unknown method or invalid parameters.
    """
    if method not in FUSION_METHODS:
        raise FusionError(f"Unknown fusion method: {method!r}")

    if not keyword_results:
        return vector_only(vector_results)

    if method == "rrf":
        return rrf_fuse(vector_results, keyword_results, rrf_k=rrf_k)

    if adaptive_weights:
        vector_weight, bm25_weight = calculate_adaptive_weights(
            vector_results, keyword_results, query, vector_weight, bm25_weight
        )
    return weighted_fuse(
        vector_results,
        keyword_results,
        vector_weight=vector_weight,
        bm25_weight=bm25_weight,
        normalization_method=normalization_method,
    )


# ============== Cross-variant merge ==============

def merge_variant_results(
    result_lists: Sequence[Sequence[Candidate]],
    combine_method: str = "max",
) -> list[Candidate]:
    """
    Merge fused lists from several query strings into one list.

    Occurrences of the same candidate are combined with:
        max:     highest score
        average: mean score
        sum:     total, clamped to 1.0

    The copy with the highest score is kept as the body. Grouping is by
    identity, so the result does not depend on list order.

    Returns:
        Merged candidates sorted by combined score desc, then id.

    Raises:
        FusionError: Unknown combine method.
    """
    if combine_method not in COMBINE_METHODS:
        raise FusionError(f"Unknown combine method: {combine_method!r}")

    groups: dict[tuple[str, str], list[Candidate]] = {}
    for results in result_lists:
        for c in results:
            groups.setdefault(c.key, []).append(c)

    merged = []
    for occurrences in groups.values():
        scores = tuple(c.score for c in occurrences)
        if combine_method == "max":
            combined = max(scores)
        elif combine_method == "average":
            combined = sum(scores) / len(scores)
        else:
            combined = min(sum(scores), 1.0)

        body = max(occurrences, key=lambda c: c.score)
        merged.append(body.with_score(combined, MergeRecord(
            method=combine_method,
            occurrences=len(occurrences),
            inputs=scores,
            output=combined,
        )))

    merged.sort(key=_sort_key)
    return merged
