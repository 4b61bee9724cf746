"""Ollama embedding provider for local deployments."""

import httpx
from ollama import AsyncClient, ResponseError

from meditation_cache_service.logging_config import get_logger

from .base import EmbeddingProvider
from .exceptions import EmbeddingError

logger = get_logger(__name__)

# Known output dimensions; other models report theirs on first use
MODEL_DIMENSIONS = {
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
}


def canonical_model_name(model: str) -> str:
    """Strip the implicit ":latest" tag so both spellings pin the same vectors.

    Example:
        >>> canonical_model_name("nomic-embed-text:latest")
        'nomic-embed-text'
    """
    return model[: -len(":latest")] if model.endswith(":latest") else model


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeddings from a local Ollama server (nomic-embed-text by default).

    Uses the batch /api/embed endpoint: each request carries up to
    batch_size inputs and returns one vector per input, in order.
    """

    MODEL = "nomic-embed-text"
    MAX_TOKENS = 8192
    DEFAULT_BATCH_SIZE = 32

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = MODEL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        timeout_seconds: float = 30.0,
    ):
        """Initialize Ollama provider.

        Args:
            base_url: Ollama server URL.
            model: Model name, with or without a tag.
            batch_size: Inputs per request.
            timeout_seconds: HTTP timeout per request.
        """
        self.client = AsyncClient(host=base_url, timeout=timeout_seconds)
        self.model = model
        self.batch_size = batch_size
        self._observed_dimensions: int | None = None

    @property
    def dimensions(self) -> int:
        known = MODEL_DIMENSIONS.get(self.model_name)
        if known is not None:
            return known
        return self._observed_dimensions or MODEL_DIMENSIONS[self.MODEL]

    @property
    def model_name(self) -> str:
        return canonical_model_name(self.model)

    @property
    def max_tokens(self) -> int:
        return self.MAX_TOKENS

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in batches.

        Raises:
            EmbeddingError: If the server is unreachable, rejects the request,
                or returns the wrong number of vectors.
        """
        if not texts:
            return []

        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            try:
                response = await self.client.embed(model=self.model, input=batch)
            except ResponseError as e:
                raise EmbeddingError(
                    f"Ollama embedding failed ({e.status_code}): {e.error}"
                ) from e
            except (httpx.HTTPError, OSError) as e:
                raise EmbeddingError(f"Ollama embedding failed: {e}") from e

            embeddings = response["embeddings"]
            self.check_batch(batch, embeddings)
            vectors.extend(list(vector) for vector in embeddings)

        self._observed_dimensions = len(vectors[0])
        logger.debug("embedding_batch_completed", provider="ollama", count=len(texts))
        return vectors

    async def health_check(self) -> bool:
        """Check that the server answers and the model is pulled."""
        try:
            response = await self.client.list()
        except (ResponseError, httpx.HTTPError, OSError) as e:
            logger.warning("ollama_unreachable", error=str(e))
            return False

        names = {
            canonical_model_name(entry.get("model") or entry.get("name") or "")
            for entry in response["models"]
        }
        return self.model_name in names
