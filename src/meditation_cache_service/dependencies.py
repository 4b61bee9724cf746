"""Composition root: process-wide cache services for FastAPI dependencies.

Design Decision: Explicit services, cached factories
- Each service is built once per process with @lru_cache(maxsize=1) and
  receives its collaborators explicitly (store, embedding provider, memory
  layer, settings). No component reaches for a hidden global.
- Tests replace any of them with app.dependency_overrides.
"""

from functools import lru_cache

from meditation_cache_service.admin.engine import CacheAdministration
from meditation_cache_service.cache.lookup import SegmentLookup
from meditation_cache_service.cache.memory import ReadThroughCache
from meditation_cache_service.cache.resolver import SegmentAudioResolver
from meditation_cache_service.cache.store import SegmentStore
from meditation_cache_service.cache.writer import CacheWriter
from meditation_cache_service.config import settings
from meditation_cache_service.database import AsyncSessionLocal
from meditation_cache_service.embeddings import EmbeddingProvider, get_embedding_provider
from meditation_cache_service.logging_config import get_logger
from meditation_cache_service.providers import LocalAudioStorage, TTSProvider

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_segment_store() -> SegmentStore:
    return SegmentStore(AsyncSessionLocal)


@lru_cache(maxsize=1)
def get_memory_cache() -> ReadThroughCache:
    return ReadThroughCache(
        max_entries=settings.cache_memory_max_entries,
        ttl_seconds=settings.cache_memory_ttl_seconds,
    )


@lru_cache(maxsize=1)
def get_optional_embedding_provider() -> EmbeddingProvider | None:
    """Configured embedding provider, or None when it cannot be built.

    A missing provider only disables semantic features; exact lookups and
    writes keep working.
    """
    try:
        return get_embedding_provider()
    except ValueError as e:
        logger.warning("embedding_provider_unavailable", error=str(e))
        return None


@lru_cache(maxsize=1)
def get_segment_lookup() -> SegmentLookup:
    return SegmentLookup(
        get_segment_store(),
        get_optional_embedding_provider(),
        get_memory_cache(),
    )


@lru_cache(maxsize=1)
def get_cache_writer() -> CacheWriter:
    return CacheWriter(
        get_segment_store(),
        get_optional_embedding_provider(),
        get_memory_cache(),
    )


@lru_cache(maxsize=1)
def get_cache_administration() -> CacheAdministration:
    return CacheAdministration(
        get_segment_store(),
        get_optional_embedding_provider(),
        get_memory_cache(),
    )


@lru_cache(maxsize=1)
def get_audio_storage() -> LocalAudioStorage:
    return LocalAudioStorage(settings.audio_storage_path, settings.audio_base_url)


def build_segment_resolver(tts: TTSProvider) -> SegmentAudioResolver:
    """Resolver for the generation pipeline, sharing this process's cache services.

    The TTS vendor integration lives with the caller, so it is passed in.
    """
    return SegmentAudioResolver(
        get_segment_lookup(),
        get_cache_writer(),
        tts,
        get_audio_storage(),
    )
