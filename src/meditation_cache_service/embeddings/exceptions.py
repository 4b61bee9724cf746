"""Custom exceptions for embedding module."""

from meditation_cache_service.exceptions import ProviderUnavailableError


class EmbeddingError(ProviderUnavailableError):
    """Base exception for embedding-related errors.

    Raised by providers with the original error chained as __cause__.
    Semantic lookup treats it as "skip semantic search"; repair counts it
    per item.
    """

    pass
