"""
Tests for per-query fusion (RRF, weighted), score normalization,
adaptive weights and cross-variant merge.
"""
import pytest

from ragfusion.candidates import FusionRecord, MergeRecord, Source
from ragfusion.errors import FusionError
from ragfusion.hybrid import (
    calculate_adaptive_weights,
    detect_query_type,
    fuse,
    merge_variant_results,
    normalize_scores,
    rrf_fuse,
    weighted_fuse,
)


# ============== RRF ==============

def test_rrf_candidate_in_both_lists_ranks_first(make_candidate):
    vec = [make_candidate(1, 0.9), make_candidate(2, 0.8)]
    kw = [make_candidate(2, 12.0, similarity=None), make_candidate(3, 7.0, similarity=None)]

    fused, stats = rrf_fuse(vec, kw, rrf_k=60)

    assert [c.id for c in fused] == ["2", "1", "3"]
    assert fused[0].score == pytest.approx(1 / 62 + 1 / 61)
    assert fused[1].score == pytest.approx(1 / 61)
    assert fused[2].score == pytest.approx(1 / 62)
    assert stats.overlap == 1
    assert stats.vec_only == 1
    assert stats.kw_only == 1


def test_rrf_records_ranks_and_none_for_absent(make_candidate):
    vec = [make_candidate("a", 0.9)]
    kw = [make_candidate("b", 3.0, similarity=None)]

    fused, _ = rrf_fuse(vec, kw)
    records = {c.id: c.score_history[-1] for c in fused}

    assert isinstance(records["a"], FusionRecord)
    assert records["a"].method == "rrf"
    assert records["a"].vector_rank == 1
    assert records["a"].keyword_rank is None
    assert records["b"].vector_rank is None
    assert records["b"].keyword_rank == 1


def test_rrf_ties_broken_by_id(make_candidate):
    vec = [make_candidate("z", 0.9)]
    kw = [make_candidate("m", 5.0, similarity=None)]

    fused, _ = rrf_fuse(vec, kw)

    # Both have 1/61
    assert [c.id for c in fused] == ["m", "z"]


def test_rrf_both_lists_at_or_above_single_list_with_same_ranks(make_candidate):
    vec = [make_candidate("x", 0.9), make_candidate("both", 0.8)]
    kw = [make_candidate("y", 9.0, similarity=None), make_candidate("both", 8.0, similarity=None)]

    fused, _ = rrf_fuse(vec, kw)
    scores = {c.id: c.score for c in fused}

    assert scores["both"] >= scores["x"]
    assert scores["both"] >= scores["y"]


def test_rrf_rejects_non_positive_k(make_candidate):
    with pytest.raises(FusionError):
        rrf_fuse([make_candidate(1, 0.5)], [], rrf_k=0)


def test_rrf_does_not_mutate_inputs(make_candidate):
    vec = [make_candidate(1, 0.9)]
    rrf_fuse(vec, [make_candidate(1, 4.0, similarity=None)])
    assert vec[0].score == 0.9
    assert vec[0].score_history == ()


# ============== Normalization ==============

def test_min_max_maps_extremes_to_one_and_zero():
    result = normalize_scores([3.0, 7.0, 5.0], "min-max")
    assert result.values == pytest.approx([0.0, 1.0, 0.5])
    assert not result.identical_scores


def test_single_score_normalizes_to_one():
    for method in ("min-max", "z-score"):
        result = normalize_scores([42.0], method)
        assert result.values == [1.0]
        assert result.single_result


def test_identical_scores_flagged_not_error():
    for method in ("min-max", "z-score"):
        result = normalize_scores([2.0, 2.0, 2.0], method)
        assert result.values == [1.0, 1.0, 1.0]
        assert result.identical_scores


def test_z_score_uses_sigmoid():
    result = normalize_scores([1.0, 3.0], "z-score")
    # mean 2, population stddev 1 -> z = -1, +1
    assert result.values[0] == pytest.approx(1 / (1 + 2.718281828459045))
    assert result.values[1] == pytest.approx(1 / (1 + 1 / 2.718281828459045))
    assert all(0.0 < v < 1.0 for v in result.values)


def test_none_normalization_passes_through():
    assert normalize_scores([5.0, 1.5], "none").values == [5.0, 1.5]


def test_unknown_normalization_raises():
    with pytest.raises(FusionError):
        normalize_scores([1.0], "softmax")


# ============== Weighted fusion ==============

def test_weighted_robust_keeps_vector_similarity(make_candidate):
    vec = [make_candidate("1", 0.9), make_candidate("2", 0.8)]
    kw = [make_candidate("1", 10.0, similarity=None), make_candidate("2", 5.0, similarity=None)]

    fused, stats = weighted_fuse(vec, kw, vector_weight=0.6, bm25_weight=0.4)
    by_id = {c.id: c for c in fused}

    record = by_id["1"].score_history[-1]
    assert record.vector_normalized == pytest.approx(0.9)
    assert record.keyword_normalized == pytest.approx(1 / (1 + 2.718281828459045 ** -1))
    assert by_id["1"].score == pytest.approx(0.6 * 0.9 + 0.4 * record.keyword_normalized)
    assert by_id["1"].similarity == 0.9
    assert fused[0].id == "1"
    assert stats.vector_weight == 0.6


def test_weighted_min_max_absent_list_contributes_zero(make_candidate):
    vec = [make_candidate("a", 0.9), make_candidate("b", 0.5)]
    kw = [make_candidate("c", 4.0, similarity=None), make_candidate("a", 2.0, similarity=None)]

    fused, _ = weighted_fuse(vec, kw, 0.5, 0.5, normalization_method="min-max")
    scores = {c.id: c.score for c in fused}

    assert scores["a"] == pytest.approx(0.5 * 1.0 + 0.5 * 0.0)
    assert scores["b"] == pytest.approx(0.0)
    assert scores["c"] == pytest.approx(0.5)


def test_weighted_single_hits_normalize_to_one(make_candidate):
    fused, _ = weighted_fuse(
        [make_candidate("a", 0.7)],
        [make_candidate("a", 3.0, similarity=None)],
        normalization_method="min-max",
    )
    assert fused[0].score == pytest.approx(0.6 * 1.0 + 0.4 * 1.0)


def test_weighted_identical_scores_recorded(make_candidate):
    vec = [make_candidate("a", 0.7), make_candidate("b", 0.7)]
    kw = [make_candidate("a", 1.0, similarity=None)]
    fused, _ = weighted_fuse(vec, kw, normalization_method="min-max")
    assert all(c.score_history[-1].identical_scores for c in fused)


def test_fuse_without_keyword_results_passes_similarity_through(make_candidate):
    vec = [make_candidate("a", 0.82), make_candidate("b", 0.91)]
    fused, stats = fuse(vec, [], method="weighted")

    assert [c.id for c in fused] == ["b", "a"]
    assert [c.score for c in fused] == [0.91, 0.82]
    assert fused[0].score_history[-1].method == "vector_only"
    assert stats.method == "vector_only"


def test_fuse_dispatches_rrf(make_candidate):
    fused, stats = fuse([make_candidate(1, 0.9)], [make_candidate(1, 3.0, similarity=None)], method="rrf")
    assert stats.method == "rrf"
    assert fused[0].score == pytest.approx(2 / 61)


def test_fuse_unknown_method_raises(make_candidate):
    with pytest.raises(FusionError):
        fuse([make_candidate(1, 0.9)], [], method="borda")


# ============== Adaptive weights ==============

def test_detect_query_type():
    assert detect_query_type("invoice 2023") == "keyword"
    assert detect_query_type('find the "quarterly report" for me please') == "keyword"
    assert detect_query_type("how do I reset the password on my account") == "semantic"
    assert detect_query_type("reset password account settings page") == "mixed"


def test_adaptive_weights_sum_to_one_and_stay_bounded(make_candidate):
    vec = [make_candidate("a", 0.9), make_candidate("b", 0.85)]
    kw = [make_candidate("a", 12.0, similarity=None), make_candidate("b", 1.0, similarity=None)]

    vw, bw = calculate_adaptive_weights(vec, kw, "how do I reset the password on my account", 0.6, 0.4)

    assert vw + bw == pytest.approx(1.0)
    # vector mean lower (0.875 < 6.5) -> -0.05; vector variance lower -> +0.03; semantic -> +0.1
    assert vw == pytest.approx(0.68 / (0.68 + 0.32))
    assert 0.3 <= vw <= 0.7


def test_adaptive_weights_keyword_query_shifts_to_bm25(make_candidate):
    vec = [make_candidate("a", 0.9)]
    kw = [make_candidate("a", 0.5, similarity=None)]

    vw, bw = calculate_adaptive_weights(vec, kw, "invoice", 0.6, 0.4)

    # +0.05 (mean) -0.03 (equal variance) -0.1 (keyword) = -0.08
    assert vw == pytest.approx(0.52)
    assert bw == pytest.approx(0.48)


# ============== Merge ==============

def _fused(make_candidate, cid, score, source=Source.KNOWLEDGE_BASE):
    c = make_candidate(cid, score, source=source)
    return c.with_score(score, FusionRecord(method="vector_only", output=score))


def test_merge_max_is_default(make_candidate):
    a = [_fused(make_candidate, "1", 0.5), _fused(make_candidate, "2", 0.4)]
    b = [_fused(make_candidate, "1", 0.7)]

    merged = merge_variant_results([a, b])

    assert [c.id for c in merged] == ["1", "2"]
    assert merged[0].score == 0.7
    record = merged[0].score_history[-1]
    assert isinstance(record, MergeRecord)
    assert record.occurrences == 2
    assert record.method == "max"
    assert merged[1].score_history[-1].occurrences == 1


def test_merge_average(make_candidate):
    merged = merge_variant_results(
        [[_fused(make_candidate, "1", 0.4)], [_fused(make_candidate, "1", 0.8)]],
        combine_method="average",
    )
    assert merged[0].score == pytest.approx(0.6)


def test_merge_sum_clamped_to_one(make_candidate):
    lists = [[_fused(make_candidate, "1", 0.6)] for _ in range(3)]
    merged = merge_variant_results(lists, combine_method="sum")
    assert merged[0].score == 1.0
    assert merged[0].score_history[-1].inputs == (0.6, 0.6, 0.6)


def test_merge_is_order_independent(make_candidate):
    a = [_fused(make_candidate, "1", 0.5), _fused(make_candidate, "2", 0.9)]
    b = [_fused(make_candidate, "3", 0.7), _fused(make_candidate, "1", 0.6)]

    forward = merge_variant_results([a, b])
    backward = merge_variant_results([b, a])

    assert [(c.id, c.score) for c in forward] == [(c.id, c.score) for c in backward]


def test_merge_keeps_same_id_from_different_sources_apart(make_candidate):
    merged = merge_variant_results([
        [_fused(make_candidate, "1", 0.5)],
        [_fused(make_candidate, "1", 0.6, source=Source.EMAIL)],
    ])
    assert len(merged) == 2


def test_merge_unknown_method_raises(make_candidate):
    with pytest.raises(FusionError):
        merge_variant_results([[_fused(make_candidate, "1", 0.5)]], combine_method="median")
