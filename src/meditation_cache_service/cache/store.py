"""Segment store: the single authority over the audio_segments_cache table.

Design Decision: One Transport Boundary
=======================================

Every other cache component goes through SegmentStore; nothing else opens
sessions on the cache table. This is where timeouts and retries live:

- Each call runs in its own AsyncSession under asyncio.timeout(timeout_seconds).
- Transient failures (OperationalError, InterfaceError, OSError, TimeoutError)
  are retried by a RetryPolicy; exhaustion raises StoreUnavailableError.
- IntegrityError is never retried. The uniqueness constraint on
  (text_hash, voice_id, voice_style) surfaces as ConflictError.

Concurrency:
- increment_usage is a single UPDATE ... RETURNING, so concurrent hits on
  the same row never lose an increment.
- Destructive operations (delete, merge_cluster) require an AdminTransaction
  from administrative(); each such transaction commits or rolls back as a unit.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meditation_cache_service.config import settings
from meditation_cache_service.exceptions import (
    AdministrativeScopeError,
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
)
from meditation_cache_service.logging_config import get_logger
from meditation_cache_service.models import AudioSegment
from meditation_cache_service.retry import RetryPolicy

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    InterfaceError,
    OSError,
    TimeoutError,
)

# Columns copied from a caller-built AudioSegment on insert
_INSERTABLE_COLUMNS = tuple(
    column.key for column in AudioSegment.__table__.columns if column.key != "id"
)


async def _identity_exists(session: AsyncSession, values: dict) -> bool:
    """True if a row with the same (text_hash, voice_id, voice_style) is committed."""
    identity = [values.get(key) for key in ("text_hash", "voice_id", "voice_style")]
    if None in identity:
        return False
    text_hash, voice_id, voice_style = identity
    result = await session.execute(
        select(AudioSegment.id).where(
            AudioSegment.text_hash == text_hash,
            AudioSegment.voice_id == voice_id,
            AudioSegment.voice_style == voice_style,
        )
    )
    return result.first() is not None


@dataclass(frozen=True)
class SegmentFilter:
    """Row filter for scan_all.

    Attributes:
        voice_id / voice_style / language: Equality filters.
        has_embedding: True for rows with a vector, False for rows without.
        embedding_model: Only rows embedded by this model.
        stale_for_model: Rows that lack a vector produced by this model
            (no vector, unknown model, or a different model).
        after_id: Resume the scan after this id.
    """

    voice_id: str | None = None
    voice_style: str | None = None
    language: str | None = None
    has_embedding: bool | None = None
    embedding_model: str | None = None
    stale_for_model: str | None = None
    after_id: int | None = None

    def apply(self, stmt: Select) -> Select:
        """Add this filter's WHERE clauses to a select over AudioSegment."""
        if self.voice_id is not None:
            stmt = stmt.where(AudioSegment.voice_id == self.voice_id)
        if self.voice_style is not None:
            stmt = stmt.where(AudioSegment.voice_style == self.voice_style)
        if self.language is not None:
            stmt = stmt.where(AudioSegment.language == self.language)
        if self.has_embedding is True:
            stmt = stmt.where(AudioSegment.embedding.is_not(None))
        elif self.has_embedding is False:
            stmt = stmt.where(AudioSegment.embedding.is_(None))
        if self.embedding_model is not None:
            stmt = stmt.where(AudioSegment.embedding_model == self.embedding_model)
        if self.stale_for_model is not None:
            stmt = stmt.where(
                or_(
                    AudioSegment.embedding.is_(None),
                    AudioSegment.embedding_model.is_(None),
                    AudioSegment.embedding_model != self.stale_for_model,
                )
            )
        return stmt


@dataclass(frozen=True)
class CoverageCounts:
    """Raw embedding coverage aggregates."""

    total: int
    with_embeddings: int
    languages: list[str]


@dataclass(frozen=True)
class UsageTotals:
    """Raw usage aggregates."""

    total: int
    total_usage: int
    total_duration: float
    total_size: int


class AdminTransaction:
    """Handle for one administrative database transaction.

    Obtained from SegmentStore.administrative(); becomes inactive once the
    context exits. All mutations share one transaction.
    """

    def __init__(self, store: "SegmentStore", session: AsyncSession):
        self.store = store
        self._session = session
        self.active = True

    async def delete(self, segment_id: int) -> AudioSegment:
        """Delete one row inside this transaction.

        Raises:
            NotFoundError: If the row is already gone.
        """
        segment = await self._session.get(AudioSegment, segment_id)
        if segment is None:
            raise NotFoundError(segment_id)
        await self._session.delete(segment)
        await self._session.flush()
        return segment

    async def merge_cluster(
        self, survivor_id: int, loser_ids: Sequence[int]
    ) -> tuple[AudioSegment, list[AudioSegment]]:
        """Fold loser rows into the survivor, then delete the losers.

        Members are re-read under this transaction so counters reflect any
        usage that happened after the merge was planned. Losers that no
        longer exist are skipped.

        Returns:
            (survivor, removed losers).

        Raises:
            NotFoundError: If the survivor no longer exists.
        """
        ids = [survivor_id, *loser_ids]
        result = await self._session.execute(
            select(AudioSegment).where(AudioSegment.id.in_(ids)).with_for_update()
        )
        rows = {segment.id: segment for segment in result.scalars()}

        survivor = rows.get(survivor_id)
        if survivor is None:
            raise NotFoundError(survivor_id)
        losers = [rows[i] for i in loser_ids if i in rows and i != survivor_id]

        members = [survivor, *losers]
        survivor.usage_count = sum(member.usage_count for member in members)
        survivor.last_used_at = max(member.last_used_at for member in members)

        for loser in losers:
            await self._session.delete(loser)
        await self._session.flush()
        return survivor, losers


class SegmentStore:
    """Async repository for cached audio segments.

    Example:
        >>> store = SegmentStore(AsyncSessionLocal)
        >>> segment = await store.get_by_fingerprint(text_hash, "v1", "calm")
        >>> if segment:
        ...     segment = await store.increment_usage(segment.id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        timeout_seconds: float | None = None,
        retry_policy: RetryPolicy | None = None,
        page_size: int | None = None,
    ):
        """Initialize store.

        Args:
            session_factory: Factory producing AsyncSession objects.
            timeout_seconds: Deadline per store call (default from settings).
            retry_policy: Policy for transient errors (default from settings).
            page_size: Default scan_all page size (default from settings).
        """
        self._session_factory = session_factory
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.store_timeout_seconds
        )
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.store_max_retries,
            base_delay=settings.store_retry_base_delay,
        )
        self.page_size = page_size or settings.cache_scan_page_size

    async def _call(
        self,
        operation_name: str,
        operation: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        """Run operation in a fresh session under the timeout and retry policy."""

        async def attempt() -> T:
            async with asyncio.timeout(self.timeout_seconds):
                async with self._session_factory() as session:
                    return await operation(session)

        try:
            return await self.retry_policy.run(
                attempt,
                retry_on=TRANSIENT_ERRORS,
                operation_name=f"store.{operation_name}",
            )
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailableError(f"Segment store {operation_name} failed: {e}") from e

    async def get(self, segment_id: int) -> AudioSegment | None:
        """Fetch a row by id."""

        async def operation(session: AsyncSession) -> AudioSegment | None:
            return await session.get(AudioSegment, segment_id)

        return await self._call("get", operation)

    async def get_by_fingerprint(
        self, text_hash: str, voice_id: str, voice_style: str
    ) -> AudioSegment | None:
        """Exact-match lookup by (text_hash, voice_id, voice_style)."""

        async def operation(session: AsyncSession) -> AudioSegment | None:
            result = await session.execute(
                select(AudioSegment).where(
                    AudioSegment.text_hash == text_hash,
                    AudioSegment.voice_id == voice_id,
                    AudioSegment.voice_style == voice_style,
                )
            )
            return result.scalar_one_or_none()

        return await self._call("get_by_fingerprint", operation)

    async def insert(self, segment: AudioSegment) -> AudioSegment:
        """Insert a new row and return it with server defaults loaded.

        The passed object is used as a template; a fresh row is built per
        attempt so retries never reuse an object bound to a failed session.

        Raises:
            ConflictError: If (text_hash, voice_id, voice_style) already exists.
            IntegrityError: For any other constraint violation.
            StoreUnavailableError: If the store cannot be reached.
        """
        values = {
            key: getattr(segment, key)
            for key in _INSERTABLE_COLUMNS
            if getattr(segment, key) is not None
        }

        async def operation(session: AsyncSession) -> AudioSegment:
            row = AudioSegment(**values)
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as e:
                await session.rollback()
                if await _identity_exists(session, values):
                    raise ConflictError(
                        segment.text_hash, segment.voice_id, segment.voice_style
                    ) from e
                # NOT NULL, length or other constraint: not a lost race
                raise
            await session.refresh(row)
            await session.commit()
            return row

        return await self._call("insert", operation)

    async def increment_usage(self, segment_id: int) -> AudioSegment | None:
        """Atomically bump usage_count and last_used_at.

        Returns:
            The updated row, or None if it no longer exists.
        """

        async def operation(session: AsyncSession) -> AudioSegment | None:
            result = await session.execute(
                update(AudioSegment)
                .where(AudioSegment.id == segment_id)
                .values(
                    usage_count=AudioSegment.usage_count + 1,
                    last_used_at=func.now(),
                )
                .returning(AudioSegment)
                .execution_options(synchronize_session=False)
            )
            segment = result.scalar_one_or_none()
            await session.commit()
            return segment

        return await self._call("increment_usage", operation)

    async def update_embedding(
        self, segment_id: int, embedding: list[float], model_name: str
    ) -> None:
        """Attach an embedding to a row.

        Raises:
            NotFoundError: If the row no longer exists.
        """

        async def operation(session: AsyncSession) -> None:
            result = await session.execute(
                update(AudioSegment)
                .where(AudioSegment.id == segment_id)
                .values(embedding=embedding, embedding_model=model_name)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError(segment_id)
            await session.commit()

        await self._call("update_embedding", operation)

    async def scan_page(
        self,
        segment_filter: SegmentFilter | None = None,
        after_id: int | None = None,
        limit: int | None = None,
    ) -> list[AudioSegment]:
        """Fetch one page of rows with id > after_id, ordered by id."""
        segment_filter = segment_filter or SegmentFilter()
        limit = limit or self.page_size

        async def operation(session: AsyncSession) -> list[AudioSegment]:
            stmt = segment_filter.apply(select(AudioSegment))
            if after_id is not None:
                stmt = stmt.where(AudioSegment.id > after_id)
            stmt = stmt.order_by(AudioSegment.id).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars())

        return await self._call("scan_page", operation)

    async def scan_all(
        self,
        segment_filter: SegmentFilter | None = None,
        page_size: int | None = None,
    ) -> AsyncIterator[AudioSegment]:
        """Stream matching rows in id order, one keyset page at a time.

        Only one page is held in memory; rows inserted or deleted during the
        scan may or may not be seen.
        """
        segment_filter = segment_filter or SegmentFilter()
        page_size = page_size or self.page_size
        after_id = segment_filter.after_id

        while True:
            page = await self.scan_page(segment_filter, after_id, page_size)
            for segment in page:
                yield segment
            if len(page) < page_size:
                return
            after_id = page[-1].id

    async def delete(
        self, segment_id: int, transaction: AdminTransaction | None = None
    ) -> AudioSegment:
        """Delete a row; only allowed inside an administrative transaction.

        Raises:
            AdministrativeScopeError: Without an active AdminTransaction of this store.
            NotFoundError: If the row is already gone.
        """
        if transaction is None or not transaction.active or transaction.store is not self:
            raise AdministrativeScopeError(
                "delete requires an active transaction from SegmentStore.administrative()"
            )
        return await transaction.delete(segment_id)

    @asynccontextmanager
    async def administrative(self) -> AsyncIterator[AdminTransaction]:
        """Open one transaction for administrative mutations.

        Commits when the block exits cleanly, rolls back on any error. The
        whole block runs under the store deadline; a timeout or a transient
        database error raises StoreUnavailableError.

        Example:
            >>> async with store.administrative() as tx:
            ...     await tx.merge_cluster(survivor_id, [loser_id])
        """
        try:
            async with asyncio.timeout(self.timeout_seconds):
                async with self._session_factory() as session:
                    async with session.begin():
                        transaction = AdminTransaction(self, session)
                        try:
                            yield transaction
                        finally:
                            transaction.active = False
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailableError(f"Administrative transaction failed: {e}") from e

    async def coverage_counts(self) -> CoverageCounts:
        """Total rows, rows with embeddings, and distinct languages."""

        async def operation(session: AsyncSession) -> CoverageCounts:
            total, with_embeddings = (
                await session.execute(
                    select(func.count(AudioSegment.id), func.count(AudioSegment.embedding))
                )
            ).one()
            languages = await session.execute(
                select(AudioSegment.language).distinct().order_by(AudioSegment.language)
            )
            return CoverageCounts(
                total=total or 0,
                with_embeddings=with_embeddings or 0,
                languages=list(languages.scalars()),
            )

        return await self._call("coverage_counts", operation)

    async def usage_totals(self) -> UsageTotals:
        """Row count and sums of usage, duration and file size."""

        async def operation(session: AsyncSession) -> UsageTotals:
            row = (
                await session.execute(
                    select(
                        func.count(AudioSegment.id),
                        func.coalesce(func.sum(AudioSegment.usage_count), 0),
                        func.coalesce(func.sum(AudioSegment.audio_duration), 0.0),
                        func.coalesce(func.sum(AudioSegment.file_size), 0),
                    )
                )
            ).one()
            return UsageTotals(
                total=row[0] or 0,
                total_usage=int(row[1]),
                total_duration=float(row[2]),
                total_size=int(row[3]),
            )

        return await self._call("usage_totals", operation)
