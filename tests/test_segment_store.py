"""Tests for the segment store against a real (SQLite) database."""

import asyncio
import time
import warnings
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, SAWarning

from meditation_cache_service.cache.fingerprint import fingerprint
from meditation_cache_service.cache.store import SegmentFilter, SegmentStore
from meditation_cache_service.exceptions import (
    AdministrativeScopeError,
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
)
from meditation_cache_service.models import AudioSegment
from meditation_cache_service.retry import RetryPolicy


def new_segment(text: str, voice_id: str = "voice-a", voice_style: str = "calm") -> AudioSegment:
    return AudioSegment(
        text_content=text,
        text_hash=fingerprint(text),
        voice_id=voice_id,
        voice_gender="female",
        voice_style=voice_style,
        audio_url=f"/audio/{voice_id}.mp3",
    )


class TestInsertAndFetch:
    """Insert, defaults and exact lookup."""

    @pytest.mark.asyncio
    async def test_insert_applies_defaults(self, store: SegmentStore) -> None:
        segment = await store.insert(new_segment("Breathe in."))

        assert segment.id is not None
        assert segment.usage_count == 1
        assert segment.language == "en-US"
        assert segment.created_at is not None
        assert segment.last_used_at is not None
        assert segment.embedding is None
        assert segment.similarity_threshold is None

    @pytest.mark.asyncio
    async def test_get_by_fingerprint(self, store: SegmentStore) -> None:
        inserted = await store.insert(new_segment("Breathe in."))

        found = await store.get_by_fingerprint(fingerprint("  BREATHE IN. "), "voice-a", "calm")
        assert found is not None
        assert found.id == inserted.id

        assert await store.get_by_fingerprint(fingerprint("Breathe in."), "voice-b", "calm") is None
        assert await store.get_by_fingerprint(fingerprint("Breathe in."), "voice-a", "warm") is None

    @pytest.mark.asyncio
    async def test_get_missing(self, store: SegmentStore) -> None:
        assert await store.get(12345) is None


class TestUniqueness:
    """(text_hash, voice_id, voice_style) is unique."""

    @pytest.mark.asyncio
    async def test_duplicate_insert_raises_conflict(self, store: SegmentStore) -> None:
        await store.insert(new_segment("Relax your shoulders."))

        with pytest.raises(ConflictError) as exc_info:
            await store.insert(new_segment("relax your shoulders."))

        assert exc_info.value.voice_id == "voice-a"

    @pytest.mark.asyncio
    async def test_same_text_other_voice_is_allowed(self, store: SegmentStore) -> None:
        a = await store.insert(new_segment("Relax.", voice_id="voice-a"))
        b = await store.insert(new_segment("Relax.", voice_id="voice-b"))
        c = await store.insert(new_segment("Relax.", voice_id="voice-a", voice_style="warm"))
        assert len({a.id, b.id, c.id}) == 3

    @pytest.mark.asyncio
    async def test_concurrent_inserts_keep_one_row(self, store: SegmentStore) -> None:
        """Racing writers produce exactly one row; the others see ConflictError."""
        results = await asyncio.gather(
            *(store.insert(new_segment("Let go.")) for _ in range(5)),
            return_exceptions=True,
        )

        inserted = [r for r in results if isinstance(r, AudioSegment)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(inserted) == 1
        assert len(conflicts) == 4

        rows = [s async for s in store.scan_all()]
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_other_constraint_violations_are_not_conflicts(
        self, store: SegmentStore
    ) -> None:
        """A NOT NULL violation is raised as-is, never reported as a lost race."""
        segment = new_segment("Soften your jaw.")
        segment.voice_gender = None

        with pytest.raises(IntegrityError):
            await store.insert(segment)

        assert [s async for s in store.scan_all()] == []


class TestUsageAccounting:
    """Atomic usage increments."""

    @pytest.mark.asyncio
    async def test_increment_usage(self, store: SegmentStore) -> None:
        segment = await store.insert(new_segment("Feel the ground."))

        updated = await store.increment_usage(segment.id)

        assert updated is not None
        assert updated.usage_count == 2
        assert updated.last_used_at >= segment.created_at

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, store: SegmentStore) -> None:
        segment = await store.insert(new_segment("Feel the ground."))

        await asyncio.gather(*(store.increment_usage(segment.id) for _ in range(10)))

        refreshed = await store.get(segment.id)
        assert refreshed.usage_count == 11

    @pytest.mark.asyncio
    async def test_increment_missing_row_returns_none(self, store: SegmentStore) -> None:
        assert await store.increment_usage(999) is None


class TestScan:
    """Keyset-paged scans and filters."""

    @pytest.mark.asyncio
    async def test_scan_all_pages_in_id_order(self, store: SegmentStore) -> None:
        ids = [(await store.insert(new_segment(f"Segment {i}"))).id for i in range(7)]

        scanned = [s.id async for s in store.scan_all(page_size=3)]

        assert scanned == ids

    @pytest.mark.asyncio
    async def test_scan_filters(self, store: SegmentStore, segment_factory) -> None:
        a = await segment_factory("One", embedding=[1.0, 0.0])
        b = await segment_factory("Two", voice_id="voice-b")
        c = await segment_factory("Three", language="fr-FR", embedding=[0.0, 1.0])
        d = await segment_factory("Four", embedding=[1.0, 1.0], embedding_model="old-model")

        async def ids(segment_filter: SegmentFilter) -> list[int]:
            return [s.id async for s in store.scan_all(segment_filter)]

        assert await ids(SegmentFilter(voice_id="voice-b")) == [b.id]
        assert await ids(SegmentFilter(language="fr-FR")) == [c.id]
        assert await ids(SegmentFilter(has_embedding=True)) == [a.id, c.id, d.id]
        assert await ids(SegmentFilter(has_embedding=False)) == [b.id]
        assert await ids(SegmentFilter(embedding_model="old-model")) == [d.id]
        assert await ids(SegmentFilter(stale_for_model="test-embed-v1")) == [b.id, d.id]
        assert await ids(SegmentFilter(after_id=b.id)) == [c.id, d.id]


class TestUpdateEmbedding:
    @pytest.mark.asyncio
    async def test_update_embedding(self, store: SegmentStore) -> None:
        segment = await store.insert(new_segment("Exhale."))

        await store.update_embedding(segment.id, [0.1, 0.2], "model-x")

        refreshed = await store.get(segment.id)
        assert refreshed.embedding == [0.1, 0.2]
        assert refreshed.embedding_model == "model-x"

    @pytest.mark.asyncio
    async def test_update_embedding_missing_row(self, store: SegmentStore) -> None:
        with pytest.raises(NotFoundError):
            await store.update_embedding(404, [0.1], "model-x")


class TestAdministrativeScope:
    """Deletes and merges only inside administrative transactions."""

    @pytest.mark.asyncio
    async def test_delete_without_transaction_is_rejected(self, store: SegmentStore) -> None:
        segment = await store.insert(new_segment("Stay."))

        with pytest.raises(AdministrativeScopeError):
            await store.delete(segment.id)

        assert await store.get(segment.id) is not None

    @pytest.mark.asyncio
    async def test_delete_with_closed_transaction_is_rejected(self, store: SegmentStore) -> None:
        segment = await store.insert(new_segment("Stay."))
        async with store.administrative() as transaction:
            pass

        with pytest.raises(AdministrativeScopeError):
            await store.delete(segment.id, transaction)

    @pytest.mark.asyncio
    async def test_delete_inside_transaction(self, store: SegmentStore) -> None:
        segment = await store.insert(new_segment("Go."))

        async with store.administrative() as transaction:
            await store.delete(segment.id, transaction)

        assert await store.get(segment.id) is None

    @pytest.mark.asyncio
    async def test_delete_missing_row(self, store: SegmentStore) -> None:
        with pytest.raises(NotFoundError):
            async with store.administrative() as transaction:
                await store.delete(777, transaction)

    @pytest.mark.asyncio
    async def test_merge_cluster_sums_usage_and_deletes_losers(
        self, store: SegmentStore, segment_factory
    ) -> None:
        survivor = await segment_factory("A", usage_count=5, last_used_at=datetime(2024, 1, 1))
        loser_1 = await segment_factory("B", usage_count=3, last_used_at=datetime(2024, 3, 1))
        loser_2 = await segment_factory("C", usage_count=2, last_used_at=datetime(2024, 2, 1))

        async with store.administrative() as transaction:
            merged, removed = await transaction.merge_cluster(survivor.id, [loser_1.id, loser_2.id])

        assert merged.usage_count == 10
        assert {s.id for s in removed} == {loser_1.id, loser_2.id}

        refreshed = await store.get(survivor.id)
        assert refreshed.usage_count == 10
        assert refreshed.last_used_at == datetime(2024, 3, 1)
        assert await store.get(loser_1.id) is None
        assert await store.get(loser_2.id) is None

    @pytest.mark.asyncio
    async def test_merge_rolls_back_on_error(self, store: SegmentStore, segment_factory) -> None:
        """Nothing changes when the transaction fails part-way."""
        survivor = await segment_factory("A", usage_count=5)
        loser = await segment_factory("B", usage_count=3)

        with pytest.raises(RuntimeError):
            async with store.administrative() as transaction:
                await transaction.merge_cluster(survivor.id, [loser.id])
                raise RuntimeError("abort")

        assert (await store.get(survivor.id)).usage_count == 5
        assert await store.get(loser.id) is not None

    @pytest.mark.asyncio
    async def test_merge_missing_survivor(self, store: SegmentStore, segment_factory) -> None:
        loser = await segment_factory("B")
        with pytest.raises(NotFoundError):
            async with store.administrative() as transaction:
                await transaction.merge_cluster(9999, [loser.id])
        assert await store.get(loser.id) is not None


class TestAggregates:
    @pytest.mark.asyncio
    async def test_coverage_counts(self, store: SegmentStore, segment_factory) -> None:
        await segment_factory("One", embedding=[1.0, 0.0])
        await segment_factory("Two", language="fr-FR")
        await segment_factory("Three", language="fr-FR", embedding=[0.0, 1.0])

        counts = await store.coverage_counts()

        assert counts.total == 3
        assert counts.with_embeddings == 2
        assert counts.languages == ["en-US", "fr-FR"]

    @pytest.mark.asyncio
    async def test_coverage_counts_query_is_warning_free(
        self, store: SegmentStore, segment_factory
    ) -> None:
        await segment_factory("One", language="de-DE")

        with warnings.catch_warnings():
            warnings.simplefilter("error", SAWarning)
            counts = await store.coverage_counts()

        assert counts.languages == ["de-DE"]

    @pytest.mark.asyncio
    async def test_usage_totals(self, store: SegmentStore, segment_factory) -> None:
        await segment_factory("One", usage_count=4, audio_duration=2.5, file_size=1000)
        await segment_factory("Two", usage_count=2, file_size=500)

        totals = await store.usage_totals()

        assert totals.total == 2
        assert totals.total_usage == 6
        assert totals.total_duration == pytest.approx(2.5)
        assert totals.total_size == 1500

    @pytest.mark.asyncio
    async def test_usage_totals_empty(self, store: SegmentStore) -> None:
        totals = await store.usage_totals()
        assert totals.total == 0
        assert totals.total_usage == 0


class TestTransportPolicy:
    """Timeouts and retries at the store boundary."""

    @pytest.mark.asyncio
    async def test_transient_errors_exhaust_to_store_unavailable(self, session_factory) -> None:
        store = SegmentStore(
            session_factory,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0),
        )
        failing = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down")))

        with patch.object(store, "_session_factory", side_effect=lambda: _FailingSession(failing)):
            with pytest.raises(StoreUnavailableError):
                await store.get(1)

        assert failing.await_count == 3

    @pytest.mark.asyncio
    async def test_timeout_maps_to_store_unavailable(self, session_factory) -> None:
        store = SegmentStore(
            session_factory,
            timeout_seconds=0.01,
            retry_policy=RetryPolicy(max_attempts=1),
        )

        async def hang(*args, **kwargs):
            await asyncio.sleep(1)

        with patch.object(store, "_session_factory", side_effect=lambda: _FailingSession(hang)):
            with pytest.raises(StoreUnavailableError):
                await store.get(1)

    @pytest.mark.asyncio
    async def test_admin_transaction_is_bounded_by_store_deadline(self, session_factory) -> None:
        """A merge blocked on a row lock fails fast instead of waiting it out."""
        store = SegmentStore(session_factory, timeout_seconds=0.2)
        started = time.monotonic()

        with pytest.raises(StoreUnavailableError):
            async with store.administrative():
                await asyncio.sleep(5)

        assert time.monotonic() - started < 2.0


class _FailingSession:
    """Async context manager whose session.get runs the given coroutine function."""

    def __init__(self, get):
        self.get = get

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False
