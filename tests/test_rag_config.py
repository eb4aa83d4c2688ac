"""
Tests for RAGConfig defaults, key styles and layering.
"""
import pytest
from pydantic import ValidationError

from ragfusion.rag_config import RAGConfig, resolve_rag_config


def test_defaults():
    config = RAGConfig()
    assert config.kb_threshold == 0.20
    assert config.email_threshold == 0.50
    assert config.max_results == 5
    assert config.search_limit == 10
    assert config.fusion_method == "weighted"
    assert config.normalization_method == "robust"
    assert config.combine_method == "max"
    assert config.rrf_k == 60
    assert config.use_diversity_filter and not config.use_mmr
    assert not config.temporal_decay_enabled


def test_accepts_camel_and_snake_case():
    config = resolve_rag_config({"kbThreshold": 0.4, "max_results": 8, "useMmr": True})
    assert config.kb_threshold == 0.4
    assert config.max_results == 8
    assert config.use_mmr


def test_override_beats_stored_beats_default():
    config = resolve_rag_config(
        override={"maxResults": 3},
        stored={"maxResults": 10, "emailThreshold": 0.3, "fusionMethod": "rrf"},
    )
    assert config.max_results == 3
    assert config.email_threshold == 0.3
    assert config.fusion_method == "rrf"
    assert config.kb_threshold == 0.20


def test_none_and_unknown_keys_ignored():
    config = resolve_rag_config({"kbThreshold": None, "somethingElse": 1}, {"kbThreshold": 0.6})
    assert config.kb_threshold == 0.6


def test_resolved_config_is_frozen():
    config = RAGConfig()
    with pytest.raises(ValidationError):
        config.max_results = 3


@pytest.mark.parametrize("bad", [
    {"kbThreshold": 1.5},
    {"maxResults": 0},
    {"fusionMethod": "borda"},
    {"combineMethod": "median"},
    {"halfLifeDays": 0},
])
def test_invalid_values_rejected(bad):
    with pytest.raises(ValidationError):
        resolve_rag_config(bad)
