"""
ragfusion: retrieval fusion and reranking for grounded chat.

Turns one user query (plus conversation history) into a ranked, balanced set
of knowledge-base and email passages:

    QueryEnhancer -> MultiSourceRetriever -> fusion -> merge
        -> threshold -> temporal decay -> rerank -> ensemble balance

Entry point:
    from ragfusion.pipeline import RetrievalPipeline
    results = await pipeline.retrieve_and_rank(query, history, rag_config)
"""
from ragfusion.candidates import Candidate, Source
from ragfusion.rag_config import RAGConfig, resolve_rag_config
from ragfusion.pipeline import RetrievalPipeline, PipelineResult

__all__ = [
    "Candidate",
    "Source",
    "RAGConfig",
    "resolve_rag_config",
    "RetrievalPipeline",
    "PipelineResult",
]
