"""
Per-knowledge-base retrieval configuration.

RAGConfig is resolved once at pipeline entry from three layers, field by field:

    explicit override  ->  stored per-KB config (rag_config JSONB)  ->  defaults

and is immutable for the rest of the run. Stored configs written by other
services use camelCase keys; both camelCase and snake_case are accepted.
"""
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_HYDE_PROMPT = (
    "Given the following question, write a detailed hypothetical answer that would "
    "perfectly answer this question:\n\n"
    "Question: {{QUERY}}\n\n"
    "Write a detailed, informative answer (2-3 paragraphs):"
)

DEFAULT_MULTI_QUERY_PROMPT = (
    "You are a helpful expert. Generate {{COUNT}} different versions of the following "
    "question to retrieve relevant documents from a knowledge base. Each version should "
    "capture the same intent but use different wording or perspective.\n\n"
    "Original question: {{QUERY}}\n\n"
    "Provide the variations as a JSON array of strings."
)

DEFAULT_CONTEXT_PROMPT = (
    "Given the conversation history and current question, rephrase the question to be "
    "standalone and include relevant context:\n\n"
    "Conversation history:\n{{HISTORY}}\n\n"
    "Current question: {{QUERY}}\n\n"
    "Rephrased standalone question:"
)

FusionMethod = Literal["rrf", "weighted"]
NormalizationMethod = Literal["robust", "min-max", "z-score", "none"]
CombineMethod = Literal["max", "average", "sum"]


class RAGConfig(BaseModel):
    """Resolved retrieval configuration for one pipeline invocation."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )

    # Thresholds and limits
    kb_threshold: float = Field(default=0.20, ge=0.0, le=1.0)
    email_threshold: float = Field(default=0.50, ge=0.0, le=1.0)
    max_results: int = Field(default=5, ge=1)

    # Hybrid search / fusion
    hybrid_search_enabled: bool = True
    fusion_method: FusionMethod = "weighted"
    normalization_method: NormalizationMethod = "robust"
    vector_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    bm25_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    rrf_k: int = Field(default=60, ge=1)
    adaptive_weights: bool = False
    combine_method: CombineMethod = "max"

    # Query enhancement
    query_enhancement_enabled: bool = True
    use_conversation_context: bool = True
    max_context_messages: int = Field(default=3, ge=0)
    fallback_on_error: bool = True
    hyde_enabled: bool = False
    multi_query_enabled: bool = False
    query_variants: int = Field(default=3, ge=1)
    hyde_prompt: str = DEFAULT_HYDE_PROMPT
    multi_query_prompt: str = DEFAULT_MULTI_QUERY_PROMPT
    context_prompt: str = DEFAULT_CONTEXT_PROMPT

    # Reranking
    reranking_enabled: bool = True
    use_diversity_filter: bool = True
    diversity_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    use_mmr: bool = False
    mmr_lambda: float = Field(default=0.7, ge=0.0, le=1.0)
    semantic_boost_enabled: bool = True
    max_boost: float = Field(default=0.05, ge=0.0, le=1.0)
    min_boost_threshold: float = Field(default=0.30, ge=0.0, le=1.0)
    dynamic_boost: bool = False

    # Temporal decay (email only)
    temporal_decay_enabled: bool = False
    half_life_days: float = Field(default=365.0, gt=0.0)
    min_decay: float = Field(default=0.5, ge=0.0, le=1.0)

    # Ensemble balancing
    ensemble_enabled: bool = True
    min_email_results: int = Field(default=1, ge=0)
    min_kb_results: int = Field(default=1, ge=0)
    max_email_ratio: float = Field(default=0.2, ge=0.0, le=1.0)
    max_kb_ratio: float = Field(default=0.8, ge=0.0, le=1.0)

    @property
    def search_limit(self) -> int:
        """Candidates requested per source/method and kept after reranking."""
        return self.max_results * 2


def _field_name_lookup() -> dict[str, str]:
    lookup: dict[str, str] = {}
    for name, info in RAGConfig.model_fields.items():
        lookup[name] = name
        if info.alias:
            lookup[info.alias] = name
    return lookup


_FIELD_NAMES = _field_name_lookup()


def _canonical(layer: Mapping[str, Any] | None) -> dict[str, Any]:
    """Map camelCase/snake_case keys to field names; drop unknown keys and None values."""
    if not layer:
        return {}
    out: dict[str, Any] = {}
    for key, value in layer.items():
        name = _FIELD_NAMES.get(key)
        if name is None or value is None:
            continue
        out[name] = value
    return out


def resolve_rag_config(
    override: Mapping[str, Any] | RAGConfig | None = None,
    stored: Mapping[str, Any] | None = None,
) -> RAGConfig:
    """
    Build the resolved RAGConfig for one invocation.

    Args:
        override: Explicit per-call values (mapping) or an already-resolved RAGConfig,
            which is returned as-is.
        stored: Per-knowledge-base values from the config store.

    Returns:
        Immutable RAGConfig.

    Raises:
        pydantic.ValidationError: A layer supplied an invalid value.
    """
    if isinstance(override, RAGConfig):
        return override

    merged = _canonical(stored)
    merged.update(_canonical(override))
    return RAGConfig.model_validate(merged)
