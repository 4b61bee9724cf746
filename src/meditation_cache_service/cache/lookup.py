"""Exact-match and semantic lookup of cached audio segments.

Design Decision: Exact First, Semantic Only On Miss
===================================================

1. Exact: fingerprint(text) + voice_id + voice_style. The embedding provider
   is never called on this path. A hit bumps usage atomically.
2. Semantic (optional, on exact miss): embed the normalized text once,
   compare against rows of the same voice, style, language and embedding
   model. A candidate qualifies when similarity >= its effective threshold
   (row override, else call threshold, else the configured default).
   The best qualifying candidate is reused and its usage bumped.

Failure Policy:
- Embedding unavailable: semantic search is skipped, the result is a miss.
- Store unavailable: the result is a degraded miss.
- Lookups never raise cache errors to the caller; generation continues
  by synthesizing fresh audio.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from meditation_cache_service.cache.fingerprint import fingerprint, normalize_for_embedding
from meditation_cache_service.cache.memory import ReadThroughCache
from meditation_cache_service.cache.similarity import similarities_to
from meditation_cache_service.cache.store import SegmentFilter, SegmentStore
from meditation_cache_service.config import settings
from meditation_cache_service.embeddings.base import EmbeddingProvider
from meditation_cache_service.exceptions import CacheError, ProviderUnavailableError
from meditation_cache_service.logging_config import get_logger
from meditation_cache_service.models import AudioSegment
from meditation_cache_service.retry import embed_with_retry

logger = get_logger(__name__)


class LookupOutcome(str, Enum):
    EXACT = "exact"
    SEMANTIC = "semantic"
    MISS = "miss"


class LookupSource(str, Enum):
    MEMORY = "memory"
    DATABASE = "database"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class SimilarityMatch:
    """A candidate row and its cosine similarity to the query."""

    segment: AudioSegment
    similarity: float


@dataclass(frozen=True)
class LookupResult:
    """Outcome of one lookup.

    Attributes:
        outcome: exact, semantic or miss.
        segment: Reused row (after usage increment) on a hit.
        similarity: 1.0 for exact hits, the cosine similarity for semantic hits.
        candidates: Qualifying semantic matches, best first.
        source: Where the answer came from (memory, database, or fallback
            when the store could not be consulted).
        degraded: True when part of the lookup was skipped because a
            dependency failed.
    """

    outcome: LookupOutcome
    segment: AudioSegment | None = None
    similarity: float | None = None
    candidates: tuple[SimilarityMatch, ...] = field(default_factory=tuple)
    source: LookupSource = LookupSource.DATABASE
    degraded: bool = False

    @property
    def hit(self) -> bool:
        return self.outcome is not LookupOutcome.MISS


def match_rank(match: SimilarityMatch) -> tuple:
    """Sort key (descending): similarity, usage, recency, then lower id."""
    segment = match.segment
    return (match.similarity, segment.usage_count, segment.last_used_at, -segment.id)


def rank_matches(matches: list[SimilarityMatch]) -> list[SimilarityMatch]:
    """Order matches best first."""
    return sorted(matches, key=match_rank, reverse=True)


class SegmentLookup:
    """Exact and semantic lookup over the segment store.

    Example:
        >>> lookup = SegmentLookup(store, provider, memory)
        >>> result = await lookup.lookup("Breathe in slowly.", "v1", "calm", "en-US")
        >>> result.outcome
        <LookupOutcome.EXACT: 'exact'>
    """

    def __init__(
        self,
        store: SegmentStore,
        embedding_provider: EmbeddingProvider | None = None,
        memory: ReadThroughCache | None = None,
        *,
        semantic_enabled: bool | None = None,
        default_threshold: float | None = None,
        candidate_limit: int | None = None,
        embedding_timeout_seconds: float | None = None,
    ):
        """Initialize lookup.

        Args:
            store: Segment store.
            embedding_provider: Provider for semantic search; None disables it.
            memory: Optional read-through memory layer.
            semantic_enabled: Default for per-call use_semantic.
            default_threshold: System default similarity threshold.
            candidate_limit: Maximum semantic candidates reported.
            embedding_timeout_seconds: Deadline for embedding the query.
        """
        self.store = store
        self.embedding_provider = embedding_provider
        self.memory = memory
        self.semantic_enabled = (
            semantic_enabled
            if semantic_enabled is not None
            else settings.cache_semantic_search_enabled
        )
        if default_threshold is None:
            default_threshold = settings.cache_semantic_threshold
        self.default_threshold = default_threshold
        self.candidate_limit = candidate_limit or settings.cache_semantic_candidate_limit
        self.embedding_timeout_seconds = (
            embedding_timeout_seconds
            if embedding_timeout_seconds is not None
            else settings.embedding_timeout_seconds
        )

    async def lookup(
        self,
        text: str,
        voice_id: str,
        voice_style: str,
        language: str | None = None,
        *,
        use_semantic: bool | None = None,
        threshold: float | None = None,
    ) -> LookupResult:
        """Find reusable audio for text in the given voice and style.

        Args:
            text: Segment text.
            voice_id: Voice identifier.
            voice_style: Voice style.
            language: Language tag (default from settings).
            use_semantic: Override the semantic search flag for this call.
            threshold: Default threshold for candidates without an override.

        Returns:
            LookupResult; never raises for store or provider failures.
        """
        language = language or settings.default_language
        text_hash = fingerprint(text)
        log = logger.bind(fingerprint=text_hash[:12], voice_id=voice_id, voice_style=voice_style)

        try:
            result = await self._exact(text_hash, voice_id, voice_style)
            if result is not None:
                log.debug(
                    "cache_exact_hit", segment_id=result.segment.id, source=result.source.value
                )
                return result

            semantic = self.semantic_enabled if use_semantic is None else use_semantic
            if not semantic or self.embedding_provider is None:
                return LookupResult(outcome=LookupOutcome.MISS)

            return await self._semantic(text, voice_id, voice_style, language, threshold, log)

        except (CacheError, SQLAlchemyError) as e:
            log.warning("cache_lookup_degraded", error=str(e), error_type=type(e).__name__)
            return LookupResult(
                outcome=LookupOutcome.MISS,
                source=LookupSource.FALLBACK,
                degraded=True,
            )

    async def _exact(self, text_hash: str, voice_id: str, voice_style: str) -> LookupResult | None:
        key = (text_hash, voice_id, voice_style)

        if self.memory is not None:
            cached = self.memory.get(key)
            if cached is not None:
                updated = await self.store.increment_usage(cached.id)
                if updated is not None:
                    self.memory.put(key, updated)
                    return LookupResult(
                        outcome=LookupOutcome.EXACT,
                        segment=updated,
                        similarity=1.0,
                        source=LookupSource.MEMORY,
                    )
                # Row merged away or deleted since it was cached
                self.memory.invalidate(key)

        segment = await self.store.get_by_fingerprint(text_hash, voice_id, voice_style)
        if segment is None:
            return None

        updated = await self.store.increment_usage(segment.id)
        if updated is None:
            return None
        if self.memory is not None:
            self.memory.put(key, updated)
        return LookupResult(
            outcome=LookupOutcome.EXACT,
            segment=updated,
            similarity=1.0,
            source=LookupSource.DATABASE,
        )

    async def _semantic(
        self,
        text: str,
        voice_id: str,
        voice_style: str,
        language: str,
        threshold: float | None,
        log,
    ) -> LookupResult:
        provider = self.embedding_provider
        try:
            async with asyncio.timeout(self.embedding_timeout_seconds):
                vectors = await embed_with_retry(
                    provider,
                    [normalize_for_embedding(text)],
                    max_retries=settings.embedding_max_retries,
                    base_delay=settings.embedding_retry_base_delay,
                )
            query = vectors[0]
        except (ProviderUnavailableError, TimeoutError) as e:
            log.warning("semantic_search_skipped", error=str(e))
            return LookupResult(outcome=LookupOutcome.MISS, degraded=True)

        matches = await self.find_similar(
            query,
            voice_id=voice_id,
            voice_style=voice_style,
            language=language,
            model_name=provider.model_name,
            threshold=threshold,
        )
        if not matches:
            return LookupResult(outcome=LookupOutcome.MISS)

        for match in matches:
            updated = await self.store.increment_usage(match.segment.id)
            if updated is None:
                continue
            log.info(
                "cache_semantic_hit",
                segment_id=updated.id,
                similarity=round(match.similarity, 4),
            )
            return LookupResult(
                outcome=LookupOutcome.SEMANTIC,
                segment=updated,
                similarity=match.similarity,
                candidates=tuple(matches[: self.candidate_limit]),
            )

        return LookupResult(outcome=LookupOutcome.MISS)

    async def find_similar(
        self,
        query: list[float],
        *,
        voice_id: str,
        voice_style: str,
        language: str,
        model_name: str,
        threshold: float | None = None,
    ) -> list[SimilarityMatch]:
        """Return every qualifying candidate, best first.

        Candidates are streamed page by page so only one page of vectors is
        in memory at a time. Rows with a vector of a different dimension are
        skipped.
        """
        call_threshold = threshold if threshold is not None else self.default_threshold
        segment_filter = SegmentFilter(
            voice_id=voice_id,
            voice_style=voice_style,
            language=language,
            has_embedding=True,
            embedding_model=model_name,
        )

        matches: list[SimilarityMatch] = []
        page: list[AudioSegment] = []
        async for segment in self.store.scan_all(segment_filter):
            if len(segment.embedding) != len(query):
                continue
            page.append(segment)
            if len(page) >= self.store.page_size:
                matches.extend(self._qualifying(query, page, call_threshold))
                page = []
        if page:
            matches.extend(self._qualifying(query, page, call_threshold))

        return rank_matches(matches)

    @staticmethod
    def _qualifying(
        query: list[float], candidates: list[AudioSegment], call_threshold: float
    ) -> list[SimilarityMatch]:
        scores = similarities_to(query, [segment.embedding for segment in candidates])
        qualifying = []
        for segment, score in zip(candidates, scores.tolist()):
            effective = (
                segment.similarity_threshold
                if segment.similarity_threshold is not None
                else call_threshold
            )
            if score >= effective:
                qualifying.append(SimilarityMatch(segment=segment, similarity=score))
        return qualifying
