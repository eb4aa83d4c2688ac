from dataclasses import asdict
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ConversationTurn(BaseModel):
    """A single turn in the conversation history."""
    role: str  # "user" or "assistant"
    content: str


class RetrieveRequest(BaseModel):
    query: str = Field(min_length=1)
    kb_id: str | None = None  # Optional: stored rag_config + vector scope
    conversation_history: list[ConversationTurn] = Field(default_factory=list)
    rag_config: dict[str, Any] | None = None  # Per-call overrides, camelCase or snake_case
    include_trace: bool = False
    max_context_tokens: int | None = Field(default=None, ge=1)


class ContextSource(BaseModel):
    id: str
    source: str
    title: str | None = None
    snippet: str
    score: float
    sent_at: datetime | None = None


class StageRecordOut(BaseModel):
    stage: str
    data: dict[str, Any]


class CandidateOut(BaseModel):
    id: str
    source: str
    title: str | None = None
    content: str
    score: float
    similarity: float | None = None
    sent_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    score_history: list[StageRecordOut] = Field(default_factory=list)

    @classmethod
    def from_candidate(cls, c) -> "CandidateOut":
        return cls(
            id=c.id,
            source=c.source.value,
            title=c.title,
            content=c.content,
            score=c.score,
            similarity=c.similarity,
            sent_at=c.sent_at,
            metadata={k: v for k, v in c.metadata.items() if _is_json_scalar(v)},
            score_history=[StageRecordOut(stage=r.stage, data=asdict(r)) for r in c.score_history],
        )


def _is_json_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


class RetrieveResponse(BaseModel):
    results: list[CandidateOut]
    context: str
    sources: list[ContextSource] = Field(default_factory=list)
    enhanced_query: str | None = None
    queries: list[str] = Field(default_factory=list)
    trace: dict[str, Any] | None = None
