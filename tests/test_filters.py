"""
Tests for the per-source threshold filter and email temporal decay.
"""
from datetime import datetime, timedelta, timezone

import pytest

from ragfusion.candidates import DecayRecord, Source, ThresholdRecord
from ragfusion.errors import RerankError
from ragfusion.filters import apply_temporal_decay, decay_factor, threshold_filter

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


# ============== Threshold ==============

def test_threshold_keeps_only_scores_at_or_above(make_candidate):
    scores = [0.95, 0.88, 0.82, 0.76, 0.60, 0.40]
    cands = [make_candidate(i, s) for i, s in enumerate(scores)]

    kept = threshold_filter(cands, kb_threshold=0.8, email_threshold=0.1)

    assert [c.score for c in kept] == [0.95, 0.88, 0.82]
    assert all(isinstance(c.score_history[-1], ThresholdRecord) for c in kept)
    assert kept[0].score_history[-1].threshold == 0.8


def test_threshold_boundary_is_inclusive(make_candidate):
    kept = threshold_filter([make_candidate(1, 0.8)], kb_threshold=0.8, email_threshold=0.5)
    assert len(kept) == 1


def test_threshold_uses_email_floor_for_email(make_candidate):
    cands = [
        make_candidate("e1", 0.15, source=Source.EMAIL),
        make_candidate("e2", 0.05, source=Source.EMAIL),
        make_candidate("k1", 0.15),
    ]

    kept = threshold_filter(cands, kb_threshold=0.3, email_threshold=0.1)

    assert [c.id for c in kept] == ["e1"]


def test_threshold_other_source_uses_kb_floor(make_candidate):
    cands = [make_candidate("o1", 0.25, source=Source.OTHER), make_candidate("o2", 0.35, source=Source.OTHER)]
    kept = threshold_filter(cands, kb_threshold=0.3, email_threshold=0.1)
    assert [c.id for c in kept] == ["o2"]


def test_threshold_preserves_order_and_scores(make_candidate):
    cands = [make_candidate("b", 0.5), make_candidate("a", 0.9)]
    kept = threshold_filter(cands, kb_threshold=0.1, email_threshold=0.1)
    assert [(c.id, c.score) for c in kept] == [("b", 0.5), ("a", 0.9)]


def test_threshold_rejects_non_finite(make_candidate):
    with pytest.raises(RerankError):
        threshold_filter([make_candidate(1, 0.5)], kb_threshold=float("nan"), email_threshold=0.1)


# ============== Decay ==============

def test_decay_factor_half_life_and_floor():
    assert decay_factor(0, 365, 0.5) == pytest.approx(1.0)
    assert decay_factor(365, 365, 0.1) == pytest.approx(0.5)
    assert decay_factor(10_000, 365, 0.3) == 0.3


def test_decay_is_non_increasing_in_age():
    factors = [decay_factor(days, 90, 0.2) for days in (0, 10, 45, 90, 180, 365, 1000)]
    assert factors == sorted(factors, reverse=True)


def test_decay_scales_email_scores(make_candidate):
    recent = make_candidate("new", 0.8, source=Source.EMAIL, sent_at=NOW)
    old = make_candidate("old", 0.8, source=Source.EMAIL, sent_at=NOW - timedelta(days=365))

    out = apply_temporal_decay([recent, old], enabled=True, half_life_days=365, min_decay=0.1, now=NOW)
    by_id = {c.id: c for c in out}

    assert by_id["new"].score == pytest.approx(0.8)
    assert by_id["old"].score == pytest.approx(0.8 * (0.8 + 0.2 * 0.5))
    record = by_id["old"].score_history[-1]
    assert isinstance(record, DecayRecord)
    assert record.applied
    assert record.days == pytest.approx(365)


def test_decay_never_drops_below_floor(make_candidate):
    ancient = make_candidate("x", 0.9, source=Source.EMAIL, sent_at=NOW - timedelta(days=50_000))
    out = apply_temporal_decay([ancient], enabled=True, half_life_days=30, min_decay=0.5, now=NOW)
    assert out[0].score == pytest.approx(0.9 * (0.8 + 0.2 * 0.5))
    assert out[0].score >= 0.9 * 0.8


def test_decay_resorts_output(make_candidate):
    old = make_candidate("old", 0.80, source=Source.EMAIL, sent_at=NOW - timedelta(days=3650))
    kb = make_candidate("kb", 0.75)

    out = apply_temporal_decay([old, kb], enabled=True, half_life_days=365, min_decay=0.5, now=NOW)

    # 0.80 * 0.9 = 0.72 < 0.75
    assert [c.id for c in out] == ["kb", "old"]


def test_decay_leaves_undated_and_non_email_unchanged(make_candidate):
    undated = make_candidate("e", 0.6, source=Source.EMAIL)
    kb = make_candidate("k", 0.7, sent_at=NOW - timedelta(days=900))

    out = apply_temporal_decay([kb, undated], enabled=True, now=NOW)

    assert [(c.id, c.score) for c in out] == [("k", 0.7), ("e", 0.6)]
    assert not any(c.score_history[-1].applied for c in out)


def test_decay_disabled_is_noop(make_candidate):
    c = make_candidate("e", 0.6, source=Source.EMAIL, sent_at=NOW - timedelta(days=900))
    out = apply_temporal_decay([c], enabled=False, now=NOW)
    assert out == [c]
    assert out[0].score_history == ()


def test_decay_future_timestamp_counts_as_today(make_candidate):
    c = make_candidate("e", 0.6, source=Source.EMAIL, sent_at=NOW + timedelta(days=3))
    out = apply_temporal_decay([c], enabled=True, now=NOW)
    assert out[0].score == pytest.approx(0.6)


def test_decay_rejects_non_positive_half_life(make_candidate):
    with pytest.raises(RerankError):
        apply_temporal_decay([make_candidate(1, 0.5)], enabled=True, half_life_days=0)
