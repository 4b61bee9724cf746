"""Cache writer: persist freshly synthesized segments."""

import asyncio

from meditation_cache_service.cache.fingerprint import fingerprint, normalize_for_embedding
from meditation_cache_service.cache.memory import ReadThroughCache
from meditation_cache_service.cache.store import SegmentStore
from meditation_cache_service.config import settings
from meditation_cache_service.embeddings.base import EmbeddingProvider
from meditation_cache_service.exceptions import ConflictError, ProviderUnavailableError
from meditation_cache_service.logging_config import get_logger
from meditation_cache_service.models import AudioSegment
from meditation_cache_service.retry import embed_with_retry

logger = get_logger(__name__)


class CacheWriter:
    """Insert new segments, resolving races on the uniqueness constraint.

    The embedding is computed before the insert so that each row is written
    once. Embedding is best effort: on failure the row is stored without a
    vector and picked up later by repair.

    When two writers race on the same (text_hash, voice_id, voice_style),
    the database keeps exactly one row; the loser re-reads and returns it,
    and its own audio URL is logged as orphaned.
    """

    def __init__(
        self,
        store: SegmentStore,
        embedding_provider: EmbeddingProvider | None = None,
        memory: ReadThroughCache | None = None,
        *,
        embedding_timeout_seconds: float | None = None,
    ):
        self.store = store
        self.embedding_provider = embedding_provider
        self.memory = memory
        self.embedding_timeout_seconds = (
            embedding_timeout_seconds
            if embedding_timeout_seconds is not None
            else settings.embedding_timeout_seconds
        )

    async def save(
        self,
        text: str,
        voice_id: str,
        voice_gender: str,
        voice_style: str,
        audio_url: str,
        audio_duration: float | None = None,
        file_size: int | None = None,
        language: str | None = None,
    ) -> AudioSegment:
        """Persist a synthesized segment and return the authoritative row.

        Args:
            text: Spoken text.
            voice_id: Voice identifier.
            voice_gender: Voice gender.
            voice_style: Voice style.
            audio_url: Location of the rendered audio.
            audio_duration: Duration in seconds, if known.
            file_size: Size in bytes, if known.
            language: Language tag (default from settings).

        Returns:
            The inserted row, or the existing row if another writer won.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        text_hash = fingerprint(text)
        log = logger.bind(fingerprint=text_hash[:12], voice_id=voice_id, voice_style=voice_style)

        embedding, model_name = await self._embed(text, log)

        candidate = AudioSegment(
            text_content=text,
            text_hash=text_hash,
            voice_id=voice_id,
            voice_gender=voice_gender,
            voice_style=voice_style,
            audio_url=audio_url,
            audio_duration=audio_duration,
            file_size=file_size,
            usage_count=1,
            embedding=embedding,
            embedding_model=model_name,
            language=language or settings.default_language,
        )

        try:
            segment = await self.store.insert(candidate)
            log.info(
                "cache_segment_saved", segment_id=segment.id, has_embedding=embedding is not None
            )
        except ConflictError:
            segment = await self.store.get_by_fingerprint(text_hash, voice_id, voice_style)
            if segment is None:
                # Winner was removed between our insert and re-read; try once more
                segment = await self.store.insert(candidate)
            else:
                log.info(
                    "cache_write_conflict",
                    segment_id=segment.id,
                    orphaned_audio_url=audio_url if audio_url != segment.audio_url else None,
                )

        if self.memory is not None:
            self.memory.put_segment(segment)
        return segment

    async def _embed(self, text: str, log) -> tuple[list[float] | None, str | None]:
        if self.embedding_provider is None:
            return None, None
        try:
            async with asyncio.timeout(self.embedding_timeout_seconds):
                vectors = await embed_with_retry(
                    self.embedding_provider,
                    [normalize_for_embedding(text)],
                    max_retries=settings.embedding_max_retries,
                    base_delay=settings.embedding_retry_base_delay,
                )
        except (ProviderUnavailableError, TimeoutError) as e:
            log.warning("cache_embedding_deferred", error=str(e))
            return None, None
        return vectors[0], self.embedding_provider.model_name
