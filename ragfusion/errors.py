"""
Error taxonomy for the retrieval pipeline.

Recoverable errors (EnhancementError, RetrievalError, ProviderError) are
absorbed by the stage that raised them and degrade that stage. FusionError and
RerankError signal malformed input and propagate. PipelineError is the
catch-all that retrieve_and_rank turns into an empty result.
"""


class RagPipelineBaseError(Exception):
    """Base class for all ragfusion errors."""


class ProviderError(RagPipelineBaseError):
    """Embedding or LLM provider failed (quota, auth, network) after retries."""


class EnhancementError(RagPipelineBaseError):
    """Query enhancement step failed."""

    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(f"{step}: {message}")


class RetrievalError(RagPipelineBaseError):
    """A single source/method search failed."""

    def __init__(self, source: str, method: str, message: str):
        self.source = source
        self.method = method
        super().__init__(f"{source}/{method}: {message}")


class FusionError(RagPipelineBaseError):
    """Fusion or merge called with invalid arguments."""


class RerankError(RagPipelineBaseError):
    """Reranking, filtering or balancing called with invalid arguments."""


class PipelineError(RagPipelineBaseError):
    """Unrecoverable failure inside retrieve_and_rank."""
