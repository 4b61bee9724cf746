"""Embedding provider interface used by lookup, writer and repair."""

from abc import ABC, abstractmethod
from collections.abc import Sequence

from .exceptions import EmbeddingError


class EmbeddingProvider(ABC):
    """Turns segment texts into vectors for semantic lookup.

    model_name is persisted next to every stored vector, and two vectors are
    only compared when they share it. A provider whose vector space changes
    (new model, new tag) must report a different model_name.

    Implementations raise EmbeddingError for every failure; callers treat it
    as "semantic features unavailable" and degrade to exact matching.
    """

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per text, in input order."""

    async def embed_one(self, text: str) -> list[float]:
        vectors = await self.embed([text])
        return vectors[0]

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Vector length, e.g. 1536 for text-embedding-3-small."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Identifier stored in audio_segments.embedding_model."""

    @property
    @abstractmethod
    def max_tokens(self) -> int:
        """Maximum input length in tokens."""

    def check_batch(self, texts: Sequence[str], vectors: Sequence) -> None:
        """Raise EmbeddingError unless there is exactly one vector per text."""
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"{self.model_name} returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
