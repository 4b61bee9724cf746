"""Embedding module public exports."""

from meditation_cache_service.config import settings

from .base import EmbeddingProvider
from .exceptions import EmbeddingError
from .ollama_provider import OllamaEmbeddingProvider
from .openai_provider import OpenAIEmbeddingProvider


def get_embedding_provider(provider_override: str | None = None) -> EmbeddingProvider:
    """Factory function to get the configured embedding provider.

    Provider Resolution Priority:
    1. provider_override parameter (explicit override)
    2. settings.embedding_provider (environment / .env)

    Args:
        provider_override: Explicit provider name, "openai" or "ollama".

    Returns:
        EmbeddingProvider instance.

    Raises:
        ValueError: If the provider is unknown or not configured.

    Example:
        provider = get_embedding_provider()
        provider = get_embedding_provider(provider_override="ollama")
    """
    provider_name = provider_override or settings.embedding_provider

    if provider_name == "openai":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY required for OpenAI provider")
        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_embedding_model,
            timeout_seconds=settings.embedding_timeout_seconds,
        )

    elif provider_name == "ollama":
        return OllamaEmbeddingProvider(
            base_url=settings.ollama_base_url,
            model=settings.ollama_model,
            timeout_seconds=settings.embedding_timeout_seconds,
        )

    else:
        raise ValueError(f"Unknown provider: {provider_name}")


__all__ = [
    "EmbeddingProvider",
    "EmbeddingError",
    "OpenAIEmbeddingProvider",
    "OllamaEmbeddingProvider",
    "get_embedding_provider",
]
