"""Tests for exact and semantic segment lookup."""

from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest

from meditation_cache_service.cache.lookup import (
    LookupOutcome,
    LookupSource,
    SegmentLookup,
)
from meditation_cache_service.cache.memory import ReadThroughCache
from meditation_cache_service.cache.store import SegmentStore
from meditation_cache_service.cache.writer import CacheWriter
from meditation_cache_service.exceptions import StoreUnavailableError


def make_lookup(store, provider, memory=None, **kwargs) -> SegmentLookup:
    options = {
        "semantic_enabled": True,
        "default_threshold": 0.90,
        "candidate_limit": 3,
        "embedding_timeout_seconds": 5.0,
    }
    options.update(kwargs)
    return SegmentLookup(store, provider, memory, **options)


class TestExactLookup:
    """Exact fingerprint hits."""

    @pytest.mark.asyncio
    async def test_exact_hit_increments_usage(
        self, lookup: SegmentLookup, segment_factory, provider
    ) -> None:
        """Saved once, looked up once: exact hit with usage_count 2."""
        saved = await segment_factory("Breathe in slowly.")

        result = await lookup.lookup("  breathe IN slowly. ", "voice-a", "calm", "en-US")

        assert result.outcome is LookupOutcome.EXACT
        assert result.hit
        assert result.segment.id == saved.id
        assert result.segment.usage_count == 2
        assert result.similarity == 1.0
        assert result.source is LookupSource.DATABASE
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_exact_hit_never_calls_embedding_provider(
        self, store: SegmentStore, segment_factory
    ) -> None:
        provider = AsyncMock()
        lookup = make_lookup(store, provider)
        await segment_factory("Relax.")

        result = await lookup.lookup("Relax.", "voice-a", "calm")

        assert result.outcome is LookupOutcome.EXACT
        provider.embed.assert_not_called()

    @pytest.mark.asyncio
    async def test_voice_and_style_are_part_of_identity(
        self, lookup: SegmentLookup, segment_factory
    ) -> None:
        await segment_factory("Relax.")

        other_voice = await lookup.lookup("Relax.", "voice-b", "calm", use_semantic=False)
        other_style = await lookup.lookup("Relax.", "voice-a", "warm", use_semantic=False)

        assert other_voice.outcome is LookupOutcome.MISS
        assert other_style.outcome is LookupOutcome.MISS

    @pytest.mark.asyncio
    async def test_second_hit_comes_from_memory(
        self, lookup: SegmentLookup, segment_factory
    ) -> None:
        await segment_factory("Let go.")

        first = await lookup.lookup("Let go.", "voice-a", "calm")
        second = await lookup.lookup("Let go.", "voice-a", "calm")

        assert first.source is LookupSource.DATABASE
        assert second.source is LookupSource.MEMORY
        assert second.segment.usage_count == 3

    @pytest.mark.asyncio
    async def test_stale_memory_entry_is_revalidated(
        self, lookup: SegmentLookup, store: SegmentStore, memory: ReadThroughCache, segment_factory
    ) -> None:
        """A memory entry for a deleted row is dropped and the store decides."""
        segment = await segment_factory("Let go.")
        await lookup.lookup("Let go.", "voice-a", "calm")

        async with store.administrative() as transaction:
            await store.delete(segment.id, transaction)

        result = await lookup.lookup("Let go.", "voice-a", "calm", use_semantic=False)

        assert result.outcome is LookupOutcome.MISS
        assert memory.get(segment.identity) is None


class TestSemanticLookup:
    """Embedding similarity fallback on exact miss."""

    @pytest.mark.asyncio
    async def test_semantic_hit(self, store, provider_factory, segment_factory) -> None:
        provider = provider_factory({"Breathe in deeply.": [1.0, 0.05]})
        lookup = make_lookup(store, provider)
        cached = await segment_factory("Breathe deeply.", embedding=[1.0, 0.0])

        result = await lookup.lookup("Breathe in deeply.", "voice-a", "calm", "en-US")

        assert result.outcome is LookupOutcome.SEMANTIC
        assert result.segment.id == cached.id
        assert result.segment.usage_count == 2
        assert result.similarity == pytest.approx(0.99875, abs=1e-4)
        assert [c.segment.id for c in result.candidates] == [cached.id]

    @pytest.mark.asyncio
    async def test_threshold_boundary_is_inclusive(
        self, store, provider_factory, segment_factory
    ) -> None:
        """Similarity exactly at the threshold hits; just above it misses."""
        provider = provider_factory({"Query": [1.0, 0.0]})
        await segment_factory("Candidate", embedding=[3.0, 4.0])  # cosine 0.6

        at_threshold = make_lookup(store, provider, default_threshold=0.6)
        above_threshold = make_lookup(store, provider, default_threshold=0.601)

        above = await above_threshold.lookup("Query", "voice-a", "calm")
        at = await at_threshold.lookup("Query", "voice-a", "calm")
        assert above.outcome is LookupOutcome.MISS
        assert at.outcome is LookupOutcome.SEMANTIC

    @pytest.mark.asyncio
    async def test_call_threshold_overrides_default(
        self, store, provider_factory, segment_factory
    ) -> None:
        provider = provider_factory({"Query": [1.0, 0.0]})
        lookup = make_lookup(store, provider, default_threshold=0.95)
        await segment_factory("Candidate", embedding=[3.0, 4.0])

        result = await lookup.lookup("Query", "voice-a", "calm", threshold=0.6)

        assert result.outcome is LookupOutcome.SEMANTIC

    @pytest.mark.asyncio
    async def test_entry_threshold_overrides_call_threshold(
        self, store, provider_factory, segment_factory
    ) -> None:
        provider = provider_factory({"Query": [1.0, 0.0]})
        lookup = make_lookup(store, provider, default_threshold=0.5)
        await segment_factory("Strict", embedding=[3.0, 4.0], similarity_threshold=0.7)

        result = await lookup.lookup("Query", "voice-a", "calm", threshold=0.5)

        assert result.outcome is LookupOutcome.MISS

    @pytest.mark.asyncio
    async def test_tie_break_by_usage_then_recency(
        self, store, provider_factory, segment_factory
    ) -> None:
        """Equal similarity: higher usage wins, then more recent use."""
        provider = provider_factory({"Query": [1.0, 0.0]})
        lookup = make_lookup(store, provider)
        low_usage = await segment_factory(
            "A", embedding=[1.0, 0.0], usage_count=2, last_used_at=datetime(2024, 6, 1)
        )
        older = await segment_factory(
            "B", embedding=[2.0, 0.0], usage_count=5, last_used_at=datetime(2024, 1, 1)
        )
        newer = await segment_factory(
            "C", embedding=[3.0, 0.0], usage_count=5, last_used_at=datetime(2024, 3, 1)
        )

        result = await lookup.lookup("Query", "voice-a", "calm")

        assert result.segment.id == newer.id
        assert [c.segment.id for c in result.candidates] == [newer.id, older.id, low_usage.id]

    @pytest.mark.asyncio
    async def test_candidates_are_limited(self, store, provider_factory, segment_factory) -> None:
        provider = provider_factory({"Query": [1.0, 0.0]})
        lookup = make_lookup(store, provider, candidate_limit=2)
        for i in range(4):
            await segment_factory(f"Near {i}", embedding=[1.0, 0.01 * i])

        result = await lookup.lookup("Query", "voice-a", "calm")

        assert len(result.candidates) == 2
        assert result.candidates[0].similarity >= result.candidates[1].similarity

    @pytest.mark.asyncio
    async def test_semantic_respects_voice_style_language_and_model(
        self, store, provider_factory, segment_factory
    ) -> None:
        provider = provider_factory({"Query": [1.0, 0.0]})
        lookup = make_lookup(store, provider)
        await segment_factory("Other voice", embedding=[1.0, 0.0], voice_id="voice-b")
        await segment_factory("Other style", embedding=[1.0, 0.0], voice_style="warm")
        await segment_factory("Other language", embedding=[1.0, 0.0], language="fr-FR")
        await segment_factory("Other model", embedding=[1.0, 0.0], embedding_model="old-model")

        result = await lookup.lookup("Query", "voice-a", "calm", "en-US")

        assert result.outcome is LookupOutcome.MISS

    @pytest.mark.asyncio
    async def test_semantic_disabled_per_call(
        self, store, provider_factory, segment_factory
    ) -> None:
        provider = provider_factory({"Query": [1.0, 0.0]})
        lookup = make_lookup(store, provider)
        await segment_factory("Candidate", embedding=[1.0, 0.0])

        result = await lookup.lookup("Query", "voice-a", "calm", use_semantic=False)

        assert result.outcome is LookupOutcome.MISS
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_semantic_disabled_by_default_flag(
        self, store, provider_factory, segment_factory
    ) -> None:
        provider = provider_factory({"Query": [1.0, 0.0]})
        lookup = make_lookup(store, provider, semantic_enabled=False)
        await segment_factory("Candidate", embedding=[1.0, 0.0])

        assert (await lookup.lookup("Query", "voice-a", "calm")).outcome is LookupOutcome.MISS
        assert (
            await lookup.lookup("Query", "voice-a", "calm", use_semantic=True)
        ).outcome is LookupOutcome.SEMANTIC


class TestDegradation:
    """Failures degrade to a miss instead of raising."""

    @pytest.mark.asyncio
    async def test_embedding_provider_down_is_a_miss(
        self, store, unavailable_provider, segment_factory
    ) -> None:
        lookup = make_lookup(store, unavailable_provider)
        await segment_factory("Candidate", embedding=[1.0, 0.0])

        result = await lookup.lookup("Query", "voice-a", "calm")

        assert result.outcome is LookupOutcome.MISS
        assert result.degraded

    @pytest.mark.asyncio
    async def test_exact_hit_still_works_with_provider_down(
        self, store, unavailable_provider, segment_factory
    ) -> None:
        lookup = make_lookup(store, unavailable_provider)
        await segment_factory("Candidate")

        result = await lookup.lookup("Candidate", "voice-a", "calm")

        assert result.outcome is LookupOutcome.EXACT
        assert unavailable_provider.calls == []

    @pytest.mark.asyncio
    async def test_store_unavailable_is_a_degraded_miss(self, store, provider) -> None:
        lookup = make_lookup(store, provider)

        with patch.object(
            store,
            "get_by_fingerprint",
            new_callable=AsyncMock,
            side_effect=StoreUnavailableError("connection refused"),
        ):
            result = await lookup.lookup("Anything", "voice-a", "calm")

        assert result.outcome is LookupOutcome.MISS
        assert result.source is LookupSource.FALLBACK
        assert result.degraded

    @pytest.mark.asyncio
    async def test_no_provider_means_exact_only(self, store, segment_factory) -> None:
        lookup = make_lookup(store, None)
        await segment_factory("Candidate", embedding=[1.0, 0.0])

        result = await lookup.lookup("Something else", "voice-a", "calm")

        assert result.outcome is LookupOutcome.MISS
        assert not result.degraded


class TestWelcomeScenario:
    """Save, reuse exactly, then reuse a punctuation variant semantically."""

    @pytest.mark.asyncio
    async def test_variant_is_served_from_cache(
        self, store: SegmentStore, provider_factory
    ) -> None:
        text_a = "Welcome to this meditation."
        text_b = "Welcome to this meditation!"
        provider = provider_factory({text_a: [1.0, 0.0, 0.0], text_b: [0.99, 0.01, 0.0]})
        writer = CacheWriter(store, provider, embedding_timeout_seconds=5.0)
        lookup = make_lookup(store, provider, default_threshold=0.9)

        saved_a = await writer.save(text_a, "v1", "female", "calm", "/audio/a.mp3")

        exact = await lookup.lookup(text_a, "v1", "calm")
        assert exact.outcome is LookupOutcome.EXACT
        assert exact.segment.usage_count == 2

        variant = await lookup.lookup(text_b, "v1", "calm")
        assert variant.outcome is LookupOutcome.SEMANTIC
        assert variant.segment.id == saved_a.id
        assert variant.similarity >= 0.9

        saved_b = await writer.save(text_b, "v1", "female", "calm", "/audio/b.mp3")
        assert saved_b.id != saved_a.id
        assert (await lookup.lookup(text_b, "v1", "calm")).outcome is LookupOutcome.EXACT
