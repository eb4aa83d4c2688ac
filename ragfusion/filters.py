"""
Post-fusion filters: per-source relevance threshold and email temporal decay.

Both run on fused scores, never on raw per-source scores.
"""
import math
from datetime import datetime, timezone
from typing import Sequence

from ragfusion.candidates import Candidate, DecayRecord, Source, ThresholdRecord
from ragfusion.errors import RerankError
from ragfusion.logging_config import get_logger

logger = get_logger(__name__)

SECONDS_PER_DAY = 86400.0
# Decay can remove at most this share of a score
MAX_DECAY_SHARE = 0.2


def threshold_for(source: Source, kb_threshold: float, email_threshold: float) -> float:
    """Email uses its own floor; knowledge-base and any other source use the KB floor."""
    return email_threshold if source == Source.EMAIL else kb_threshold


def threshold_filter(
    candidates: Sequence[Candidate],
    kb_threshold: float,
    email_threshold: float,
) -> list[Candidate]:
    """
    Drop candidates whose score is below their source's threshold.

    Survivors keep their order and score; each gets a ThresholdRecord.
    """
    for name, value in (("kb_threshold", kb_threshold), ("email_threshold", email_threshold)):
        if not isinstance(value, (int, float)) or not math.isfinite(value):
            raise RerankError(f"{name} must be a finite number, got {value!r}")

    kept = []
    for c in candidates:
        threshold = threshold_for(c.source, kb_threshold, email_threshold)
        if c.score >= threshold:
            kept.append(c.with_score(c.score, ThresholdRecord(threshold=threshold, output=c.score)))

    logger.debug(
        f"threshold_filter | kb={kb_threshold} | email={email_threshold} | "
        f"in={len(candidates)} | out={len(kept)}"
    )
    return kept


def decay_factor(days: float, half_life_days: float, min_decay: float) -> float:
    """Exponential half-life decay, floored at min_decay. Non-increasing in days."""
    return max(min_decay, math.exp(-days / half_life_days * math.log(2)))


def _age_days(sent_at: datetime, now: datetime) -> float:
    if sent_at.tzinfo is None:
        sent_at = sent_at.replace(tzinfo=timezone.utc)
    return max(0.0, (now - sent_at).total_seconds() / SECONDS_PER_DAY)


def apply_temporal_decay(
    candidates: Sequence[Candidate],
    enabled: bool = False,
    half_life_days: float = 365.0,
    min_decay: float = 0.5,
    now: datetime | None = None,
) -> list[Candidate]:
    """
    Penalize older email candidates.

    For email candidates with a timestamp:
        factor = max(min_decay, exp(-days / half_life_days * ln 2))
        score  = score * (0.8 + 0.2 * factor)
    Everything else passes through with an unapplied DecayRecord. A no-op
    (no records) when disabled. Output is re-sorted by score.
    """
    if not enabled:
        return list(candidates)

    if half_life_days <= 0:
        raise RerankError(f"half_life_days must be positive, got {half_life_days}")

    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    decayed = []
    applied = 0
    for c in candidates:
        if c.source != Source.EMAIL or c.sent_at is None:
            decayed.append(c.with_score(c.score, DecayRecord(applied=False, input=c.score, output=c.score)))
            continue

        try:
            days = _age_days(c.sent_at, now)
        except (TypeError, OverflowError) as e:
            logger.debug(f"temporal_decay skipped | id={c.id} | err={type(e).__name__}")
            decayed.append(c.with_score(c.score, DecayRecord(applied=False, input=c.score, output=c.score)))
            continue

        factor = decay_factor(days, half_life_days, min_decay)
        new_score = c.score * ((1.0 - MAX_DECAY_SHARE) + MAX_DECAY_SHARE * factor)
        decayed.append(c.with_score(new_score, DecayRecord(
            applied=True,
            input=c.score,
            output=new_score,
            days=days,
            factor=factor,
        )))
        applied += 1

    decayed.sort(key=lambda c: (-c.score, c.id, c.source.value))
    logger.debug(
        f"temporal_decay | half_life={half_life_days} | min_decay={min_decay} | "
        f"applied={applied} | total={len(decayed)}"
    )
    return decayed
