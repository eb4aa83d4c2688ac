"""
Embedding and text-generation providers.

The pipeline depends only on the two protocols below. The OpenAI
implementations retry rate limits and transient connection errors with
exponential backoff (2, 4, 8... seconds) and raise ProviderError once
retries are exhausted or on any other API error.
"""
import asyncio
from typing import Awaitable, Callable, Protocol, TypeVar

from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, OpenAIError, RateLimitError

from ragfusion.config import settings
from ragfusion.errors import ProviderError
from ragfusion.logging_config import get_logger
from ragfusion.logging_utils import truncate_error

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (RateLimitError, APIConnectionError, APITimeoutError)


class EmbeddingProvider(Protocol):
    """Turns text into fixed-length vectors."""

    async def embed(self, text: str) -> list[float]:
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        ...


class TextGenerator(Protocol):
    """Generates text for a prompt. Used by the query enhancer only."""

    async def generate(self, prompt: str, temperature: float = 0.7, max_tokens: int = 300) -> str:
        ...


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    what: str,
    max_retries: int | None = None,
) -> T:
    """
    Await `call()` retrying transient OpenAI errors with exponential backoff.

    Raises:
        ProviderError: Retries exhausted or a non-retryable API error.
    """
    if max_retries is None:
        max_retries = settings.llm_max_retries
    retries = 0

    while True:
        try:
            return await call()
        except RETRYABLE_ERRORS as e:
            retries += 1
            if retries >= max_retries:
                raise ProviderError(f"{what} failed after {retries} attempts: {truncate_error(e)}") from e
            wait_time = 2 ** retries
            logger.warning(f"{what} retry | attempt={retries} | wait={wait_time}s | err={truncate_error(e)}")
            await asyncio.sleep(wait_time)
        except OpenAIError as e:
            raise ProviderError(f"{what} failed: {truncate_error(e)}") from e


def _default_client() -> AsyncOpenAI:
    if not settings.openai_api_key:
        raise ProviderError("OPENAI_API_KEY is not configured")
    return AsyncOpenAI(api_key=settings.openai_api_key)


class OpenAIEmbeddingProvider:
    """OpenAI embeddings with batching."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        batch_size: int = 100,
    ):
        self.client = client or _default_client()
        self.model = model or settings.openai_embedding_model
        self.batch_size = batch_size

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        if not vectors:
            raise ProviderError("embedding response was empty")
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        all_embeddings: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            response = await call_with_retry(
                lambda: self.client.embeddings.create(model=self.model, input=batch),
                what="embed",
            )
            all_embeddings.extend(item.embedding for item in response.data)
        return all_embeddings


class OpenAITextGenerator:
    """OpenAI chat completions as a plain prompt -> text generator."""

    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None):
        self.client = client or _default_client()
        self.model = model or settings.openai_chat_model

    async def generate(self, prompt: str, temperature: float = 0.7, max_tokens: int = 300) -> str:
        response = await call_with_retry(
            lambda: self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=max_tokens,
            ),
            what="generate",
        )
        if not response.choices:
            raise ProviderError("completion response had no choices")
        return (response.choices[0].message.content or "").strip()
