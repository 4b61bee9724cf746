"""Resolve script segments to audio: cache first, synthesize on miss.

Per segment:
    lookup -> hit: reuse cached audio
           -> miss: synthesize -> store audio -> save to cache

Segments are resolved concurrently, bounded by a semaphore, and returned in
input order. A deadline bounds the whole call: when it expires every
in-flight lookup, synthesis and write is cancelled and TimeoutError is raised.

Cache failures never fail the request (a failed lookup is a miss, a failed
write still returns the fresh audio). Synthesis failures do.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from meditation_cache_service.cache.fingerprint import fingerprint
from meditation_cache_service.cache.lookup import LookupOutcome, SegmentLookup
from meditation_cache_service.cache.writer import CacheWriter
from meditation_cache_service.config import settings
from meditation_cache_service.exceptions import CacheError, SynthesisError
from meditation_cache_service.logging_config import get_logger
from meditation_cache_service.providers.base import AudioStorage, TTSProvider

logger = get_logger(__name__)


@dataclass(frozen=True)
class ScriptSegment:
    """One utterance of a meditation script (pause markers already stripped)."""

    text: str
    language: str | None = None


@dataclass(frozen=True)
class VoiceConfig:
    voice_id: str
    voice_gender: str
    voice_style: str
    language: str | None = None


@dataclass(frozen=True)
class ResolvedSegment:
    """Audio chosen for one script segment."""

    text: str
    audio_url: str
    outcome: LookupOutcome
    audio_duration: float | None = None
    segment_id: int | None = None
    similarity: float | None = None

    @property
    def from_cache(self) -> bool:
        return self.outcome is not LookupOutcome.MISS


class SegmentAudioResolver:
    """Compose lookup, synthesis, storage and cache write for a script."""

    def __init__(
        self,
        lookup: SegmentLookup,
        writer: CacheWriter,
        tts: TTSProvider,
        storage: AudioStorage,
        *,
        max_concurrency: int | None = None,
    ):
        self.lookup = lookup
        self.writer = writer
        self.tts = tts
        self.storage = storage
        self.max_concurrency = max_concurrency or settings.cache_max_concurrency

    async def resolve(
        self,
        segments: Sequence[ScriptSegment],
        voice: VoiceConfig,
        *,
        use_semantic: bool | None = None,
        deadline: float | None = None,
    ) -> list[ResolvedSegment]:
        """Resolve every segment, preserving input order.

        Args:
            segments: Script segments.
            voice: Voice used for the whole script.
            use_semantic: Override semantic lookup for this call.
            deadline: Seconds allowed for the whole call.

        Raises:
            TimeoutError: If the deadline expires.
            SynthesisError: If a missed segment cannot be synthesized.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(segment: ScriptSegment) -> ResolvedSegment:
            async with semaphore:
                return await self._resolve_one(segment, voice, use_semantic)

        async def run_all() -> list[ResolvedSegment]:
            tasks = [asyncio.create_task(bounded(segment)) for segment in segments]
            try:
                return list(await asyncio.gather(*tasks))
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        if deadline is None:
            return await run_all()

        try:
            async with asyncio.timeout(deadline):
                return await run_all()
        except TimeoutError:
            logger.warning("segment_resolution_timeout", segments=len(segments), deadline=deadline)
            raise

    async def _resolve_one(
        self, segment: ScriptSegment, voice: VoiceConfig, use_semantic: bool | None
    ) -> ResolvedSegment:
        language = segment.language or voice.language or settings.default_language

        result = await self.lookup.lookup(
            segment.text,
            voice.voice_id,
            voice.voice_style,
            language,
            use_semantic=use_semantic,
        )
        if result.hit:
            return ResolvedSegment(
                text=segment.text,
                audio_url=result.segment.audio_url,
                outcome=result.outcome,
                audio_duration=result.segment.audio_duration,
                segment_id=result.segment.id,
                similarity=result.similarity,
            )

        try:
            synthesis = await self.tts.synthesize(segment.text, voice.voice_id, voice.voice_gender)
        except SynthesisError:
            logger.error(
                "segment_synthesis_failed",
                fingerprint=fingerprint(segment.text)[:12],
                voice_id=voice.voice_id,
                voice_style=voice.voice_style,
            )
            raise

        key = f"{voice.voice_id}-{voice.voice_style}-{fingerprint(segment.text)[:16]}"
        audio_url = await self.storage.store(synthesis.audio_bytes, key)

        segment_id = None
        try:
            saved = await self.writer.save(
                segment.text,
                voice.voice_id,
                voice.voice_gender,
                voice.voice_style,
                audio_url,
                audio_duration=synthesis.duration_seconds,
                file_size=synthesis.file_size,
                language=language,
            )
            segment_id = saved.id
        except (CacheError, SQLAlchemyError) as e:
            logger.warning(
                "cache_write_failed",
                fingerprint=fingerprint(segment.text)[:12],
                voice_id=voice.voice_id,
                voice_style=voice.voice_style,
                error=str(e),
            )

        return ResolvedSegment(
            text=segment.text,
            audio_url=audio_url,
            outcome=LookupOutcome.MISS,
            audio_duration=synthesis.duration_seconds,
            segment_id=segment_id,
        )
