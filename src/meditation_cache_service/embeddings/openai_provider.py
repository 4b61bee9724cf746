"""OpenAI embedding provider."""

import openai
from openai import AsyncOpenAI

from meditation_cache_service.logging_config import get_logger

from .base import EmbeddingProvider
from .exceptions import EmbeddingError

logger = get_logger(__name__)

# Output dimensions of the embedding models we accept
MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings (text-embedding-3-small by default).

    The SDK's own retries are disabled (max_retries=0): retries and backoff
    are applied once, by embed_with_retry, so a lookup's embedding deadline
    is not spent inside the client.

    Errors are raised as EmbeddingError whose message carries the HTTP
    status, which is what the retry layer uses to tell auth and bad-input
    failures (never retried) from outages.
    """

    MODEL = "text-embedding-3-small"
    MAX_TOKENS = 8192
    MAX_BATCH_SIZE = 2048

    def __init__(self, api_key: str, model: str = MODEL, timeout_seconds: float = 10.0):
        """Initialize OpenAI provider.

        Args:
            api_key: OpenAI API key.
            model: Embedding model identifier; stored next to every vector.
            timeout_seconds: HTTP timeout per request.

        Raises:
            ValueError: If api_key is empty or the model is unknown.
        """
        if not api_key:
            raise ValueError("OpenAI API key is required")
        if model not in MODEL_DIMENSIONS:
            raise ValueError(f"Unsupported OpenAI embedding model: {model}")

        self.client = AsyncOpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0)
        self.model = model

    @property
    def dimensions(self) -> int:
        return MODEL_DIMENSIONS[self.model]

    @property
    def model_name(self) -> str:
        return self.model

    @property
    def max_tokens(self) -> int:
        return self.MAX_TOKENS

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts, one request per MAX_BATCH_SIZE inputs.

        Raises:
            EmbeddingError: On API, network or response-shape errors.
        """
        if not texts:
            return []

        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.MAX_BATCH_SIZE):
            batch = texts[start : start + self.MAX_BATCH_SIZE]
            try:
                response = await self.client.embeddings.create(
                    model=self.model,
                    input=batch,
                    encoding_format="float",
                )
            except openai.APIStatusError as e:
                raise EmbeddingError(
                    f"OpenAI embedding failed ({e.status_code}): {e.message}"
                ) from e
            except openai.OpenAIError as e:
                raise EmbeddingError(f"OpenAI embedding failed: {e}") from e

            # Responses are ordered by input index, but the index is authoritative
            items = sorted(response.data, key=lambda item: item.index)
            self.check_batch(batch, items)
            vectors.extend(list(item.embedding) for item in items)

        logger.debug("embedding_batch_completed", provider="openai", count=len(texts))
        return vectors
