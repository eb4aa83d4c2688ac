"""
Candidate data model.

A Candidate is the unit that flows through every pipeline stage. Candidates
are frozen: a stage never mutates its input, it returns new copies built with
Candidate.with_score(), which also appends that stage's record to
score_history. The history therefore has exactly one record per stage the
candidate survived.

`score` is the only value stages read. `similarity` keeps the raw vector
similarity as returned by the store; fused/combined/rerank snapshots are
derived from the history.
"""
import hashlib
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Mapping, Union


class Source(str, Enum):
    """Corpus a candidate was retrieved from."""
    KNOWLEDGE_BASE = "knowledge_base"
    EMAIL = "email"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "Source":
        if isinstance(value, Source):
            return value
        key = str(value or "").strip().lower().replace("-", "_")
        if key in ("knowledge_base", "knowledgebase", "kb", "document", "documents"):
            return cls.KNOWLEDGE_BASE
        if key in ("email", "emails", "gmail", "mail"):
            return cls.EMAIL
        return cls.OTHER


# ============== Stage records ==============

@dataclass(frozen=True)
class FusionRecord:
    """Vector + keyword fusion for one query string."""
    stage: ClassVar[str] = "fusion"
    method: str  # "rrf" | "weighted" | "vector_only"
    output: float
    vector_score: float | None = None
    keyword_score: float | None = None
    vector_rank: int | None = None  # 1-indexed, None if absent from the list
    keyword_rank: int | None = None
    vector_normalized: float | None = None
    keyword_normalized: float | None = None
    vector_weight: float | None = None
    bm25_weight: float | None = None
    identical_scores: bool = False


@dataclass(frozen=True)
class MergeRecord:
    """Cross-variant merge of the same candidate found by several query strings."""
    stage: ClassVar[str] = "merge"
    method: str  # "max" | "average" | "sum"
    occurrences: int
    inputs: tuple[float, ...]
    output: float


@dataclass(frozen=True)
class ThresholdRecord:
    stage: ClassVar[str] = "threshold"
    threshold: float
    output: float


@dataclass(frozen=True)
class DecayRecord:
    stage: ClassVar[str] = "decay"
    applied: bool
    input: float
    output: float
    days: float | None = None
    factor: float | None = None


@dataclass(frozen=True)
class BoostRecord:
    stage: ClassVar[str] = "boost"
    applied: bool
    input: float
    output: float
    match_ratio: float = 0.0
    boost: float = 0.0


@dataclass(frozen=True)
class MMRRecord:
    stage: ClassVar[str] = "mmr"
    lambda_: float
    relevance: float
    max_similarity: float
    output: float


@dataclass(frozen=True)
class DiversityRecord:
    stage: ClassVar[str] = "diversity"
    threshold: float
    max_similarity: float
    output: float


@dataclass(frozen=True)
class BalanceRecord:
    stage: ClassVar[str] = "balance"
    admitted_by: str  # "quota" | "unrestricted" | "minimum" | "overflow" | "truncate"
    output: float


StageRecord = Union[
    FusionRecord,
    MergeRecord,
    ThresholdRecord,
    DecayRecord,
    BoostRecord,
    MMRRecord,
    DiversityRecord,
    BalanceRecord,
]


# ============== Candidate ==============

@dataclass(frozen=True)
class Candidate:
    """A retrieved passage and its current relevance score."""
    id: str
    source: Source
    content: str
    score: float
    title: str | None = None
    similarity: float | None = None
    sent_at: datetime | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)
    score_history: tuple[StageRecord, ...] = ()

    def __post_init__(self):
        # stage copies share this mapping, so it is read-only
        if not isinstance(self.metadata, MappingProxyType):
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def key(self) -> tuple[str, str]:
        """Identity across stages: ids are only unique within one corpus."""
        return (self.source.value, self.id)

    def with_score(self, score: float, record: StageRecord) -> "Candidate":
        """Return a copy carrying `score` with `record` appended to the history."""
        return replace(self, score=score, score_history=self.score_history + (record,))

    def _last(self, record_type: type) -> StageRecord | None:
        for record in reversed(self.score_history):
            if isinstance(record, record_type):
                return record
        return None

    @property
    def fused_score(self) -> float | None:
        record = self._last(FusionRecord)
        return record.output if record else None

    @property
    def combined_score(self) -> float | None:
        record = self._last(MergeRecord)
        return record.output if record else None

    @property
    def rerank_score(self) -> float | None:
        for record_type in (MMRRecord, DiversityRecord, BoostRecord):
            record = self._last(record_type)
            if record:
                return record.output
        return None


# ============== Normalization of raw store hits ==============

_ID_KEYS = ("id", "point_id", "chunk_id", "message_id", "email_id")
_CONTENT_KEYS = ("content", "text", "chunk_text", "body", "snippet")
_TITLE_KEYS = ("title", "subject", "file_name", "fileName", "name")
_SCORE_KEYS = ("similarity", "score", "rank")
_SENT_AT_KEYS = ("sent_at", "sentAt", "date", "received_at", "receivedAt")

# Aliased metadata fields unified to one snake_case name
_METADATA_ALIASES = {
    "fileName": "file_name",
    "totalChunks": "total_chunks",
    "chunkIndex": "chunk_index",
    "docId": "doc_id",
    "sentAt": "sent_at",
    "fromAddress": "from_address",
}


def _first(raw: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def coerce_score(value: Any) -> float | None:
    """float() that returns None for missing, non-numeric or non-finite values."""
    if value is None or isinstance(value, bool):
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(score):
        return None
    return score


def _coerce_int(value: Any) -> Any:
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a timestamp from a datetime, ISO-8601 string, or epoch number.

    Epoch values above 1e12 are treated as milliseconds. Naive datetimes are
    assumed to be UTC. Anything unparseable returns None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        seconds = value / 1000.0 if value > 1e12 else float(value)
        try:
            dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _fallback_id(source: Source, content: str, title: str | None) -> str:
    digest = hashlib.sha1(f"{source.value}|{title or ''}|{content}".encode("utf-8")).hexdigest()
    return digest[:16]


def candidate_from_hit(raw: Any, source: Source | str, method: str = "vector") -> Candidate:
    """
    Normalize one raw search hit into a Candidate.

    Accepts dicts from any store (vector, FTS, BM25) and unifies aliased
    field names (similarity/score, file_name/fileName, total_chunks/totalChunks,
    chunk_index/chunkIndex). Never raises: missing or mistyped fields fall back
    to safe defaults (empty content, score 0.0, no timestamp, content-hash id).
    """
    if isinstance(raw, Candidate):
        return raw
    if not isinstance(raw, Mapping):
        raw = {"content": "" if raw is None else str(raw)}

    src = Source.parse(source)

    payload = raw.get("payload")
    payload = payload if isinstance(payload, Mapping) else {}
    merged: dict[str, Any] = {**payload, **raw}

    content = _first(merged, _CONTENT_KEYS)
    content = content if isinstance(content, str) else ("" if content is None else str(content))

    title = _first(merged, _TITLE_KEYS)
    title = None if title is None else str(title)

    raw_score = _first(merged, _SCORE_KEYS)
    score = coerce_score(raw_score)
    similarity = coerce_score(merged.get("similarity"))
    if similarity is None and method == "vector":
        # Vector stores that only report `score` still carry a cosine similarity
        similarity = score

    raw_id = _first(merged, _ID_KEYS)
    cand_id = str(raw_id) if raw_id is not None else _fallback_id(src, content, title)

    metadata: dict[str, Any] = {}
    for key, value in merged.items():
        if key == "payload" or key in _CONTENT_KEYS:
            continue
        metadata[_METADATA_ALIASES.get(key, key)] = value
    for int_key in ("total_chunks", "chunk_index"):
        if int_key in metadata:
            metadata[int_key] = _coerce_int(metadata[int_key])

    return Candidate(
        id=cand_id,
        source=src,
        content=content,
        title=title,
        score=score if score is not None else 0.0,
        similarity=similarity,
        sent_at=parse_timestamp(_first(merged, _SENT_AT_KEYS)),
        metadata=metadata,
    )


def normalize_hits(raw_hits: Any, source: Source | str, method: str = "vector") -> list[Candidate]:
    """Normalize a raw result list; non-list input yields an empty list."""
    if not isinstance(raw_hits, (list, tuple)):
        return []
    return [candidate_from_hit(hit, source, method) for hit in raw_hits]
