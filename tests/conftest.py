"""Pytest configuration and fixtures with per-test database isolation.

Each test gets its own SQLite database file under tmp_path, created with
Base.metadata.create_all, so tests never share rows and need no cleanup.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from meditation_cache_service.admin.engine import CacheAdministration
from meditation_cache_service.cache.fingerprint import fingerprint
from meditation_cache_service.cache.lookup import SegmentLookup
from meditation_cache_service.cache.memory import ReadThroughCache
from meditation_cache_service.cache.store import SegmentStore
from meditation_cache_service.cache.writer import CacheWriter
from meditation_cache_service.database import Base, get_db
from meditation_cache_service.dependencies import (
    get_cache_administration,
    get_cache_writer,
    get_memory_cache,
    get_segment_lookup,
)
from meditation_cache_service.embeddings.base import EmbeddingProvider
from meditation_cache_service.embeddings.exceptions import EmbeddingError
from meditation_cache_service.main import app
from meditation_cache_service.models import AudioSegment
from meditation_cache_service.retry import RetryPolicy

# ============================================================================
# Load Test Environment Variables
# ============================================================================

# Optional overrides for local runs (e.g. LOG_LEVEL=DEBUG)
env_test_path = Path(__file__).parent.parent / ".env.test"
if env_test_path.exists():
    load_dotenv(env_test_path, override=True)

TEST_MODEL = "test-embed-v1"


# ============================================================================
# Fakes
# ============================================================================


class StaticEmbeddingProvider(EmbeddingProvider):
    """Deterministic embedding provider backed by a text -> vector map.

    Texts in `failing` make any request containing them fail with a
    permanent error (no retry). Unknown texts get `default`.
    """

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        *,
        default: list[float] | None = None,
        failing: set[str] | None = None,
        model: str = TEST_MODEL,
    ):
        self.vectors = vectors or {}
        self.default = default or [0.0, 0.0, 1.0]
        self.failing = failing or set()
        self.model = model
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        bad = [text for text in texts if text in self.failing]
        if bad:
            raise EmbeddingError(f"Invalid input: cannot embed {bad[0]!r}")
        return [list(self.vectors.get(text, self.default)) for text in texts]

    @property
    def dimensions(self) -> int:
        return len(self.default)

    @property
    def model_name(self) -> str:
        return self.model

    @property
    def max_tokens(self) -> int:
        return 8192


class UnavailableEmbeddingProvider(StaticEmbeddingProvider):
    """Provider whose every call fails."""

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        raise EmbeddingError("401 Unauthorized: invalid API key")


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite engine on a fresh database file with the schema created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ============================================================================
# Cache Service Fixtures
# ============================================================================


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> SegmentStore:
    return SegmentStore(
        session_factory,
        timeout_seconds=5.0,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.01, jitter=0.0),
        page_size=100,
    )


@pytest.fixture
def memory() -> ReadThroughCache:
    return ReadThroughCache(max_entries=100, ttl_seconds=300)


@pytest.fixture
def provider() -> StaticEmbeddingProvider:
    return StaticEmbeddingProvider()


@pytest.fixture
def provider_factory() -> type[StaticEmbeddingProvider]:
    """The fake provider class, for tests that need custom vectors."""
    return StaticEmbeddingProvider


@pytest.fixture
def unavailable_provider() -> UnavailableEmbeddingProvider:
    return UnavailableEmbeddingProvider()


@pytest.fixture
def lookup(
    store: SegmentStore, provider: StaticEmbeddingProvider, memory: ReadThroughCache
) -> SegmentLookup:
    return SegmentLookup(
        store,
        provider,
        memory,
        semantic_enabled=True,
        default_threshold=0.90,
        candidate_limit=3,
        embedding_timeout_seconds=5.0,
    )


@pytest.fixture
def writer(
    store: SegmentStore, provider: StaticEmbeddingProvider, memory: ReadThroughCache
) -> CacheWriter:
    return CacheWriter(store, provider, memory, embedding_timeout_seconds=5.0)


@pytest.fixture
def admin(
    store: SegmentStore, provider: StaticEmbeddingProvider, memory: ReadThroughCache
) -> CacheAdministration:
    return CacheAdministration(
        store,
        provider,
        memory,
        duplicate_threshold=0.95,
        repair_batch_size=50,
        repair_batch_delay_seconds=0.0,
        embed_max_retries=1,
        embed_retry_base_delay=0.0,
    )


# ============================================================================
# Data Fixtures
# ============================================================================


SegmentFactory = Callable[..., Awaitable[AudioSegment]]


@pytest.fixture
def segment_factory(store: SegmentStore) -> SegmentFactory:
    """Insert a segment row directly through the store.

    Example:
        >>> seg = await segment_factory("Breathe in.", embedding=[1.0, 0.0])
    """

    async def create(
        text: str,
        *,
        voice_id: str = "voice-a",
        voice_gender: str = "female",
        voice_style: str = "calm",
        language: str = "en-US",
        embedding: list[float] | None = None,
        embedding_model: str | None = None,
        usage_count: int = 1,
        last_used_at: datetime | None = None,
        file_size: int | None = None,
        audio_duration: float | None = None,
        similarity_threshold: float | None = None,
        audio_url: str | None = None,
    ) -> AudioSegment:
        text_hash = fingerprint(text)
        segment = AudioSegment(
            text_content=text,
            text_hash=text_hash,
            voice_id=voice_id,
            voice_gender=voice_gender,
            voice_style=voice_style,
            audio_url=audio_url or f"/audio/{voice_id}-{text_hash[:12]}.mp3",
            audio_duration=audio_duration,
            file_size=file_size,
            usage_count=usage_count,
            embedding=embedding,
            embedding_model=embedding_model or (TEST_MODEL if embedding is not None else None),
            language=language,
            similarity_threshold=similarity_threshold,
            last_used_at=last_used_at,
        )
        return await store.insert(segment)

    return create


# ============================================================================
# HTTP Client Fixtures
# ============================================================================


@pytest.fixture
def client() -> TestClient:
    """Synchronous test client for routes that touch no database."""
    return TestClient(app)


@pytest.fixture
async def async_client(
    db_session: AsyncSession,
    lookup: SegmentLookup,
    writer: CacheWriter,
    admin: CacheAdministration,
    memory: ReadThroughCache,
) -> AsyncGenerator[AsyncClient, None]:
    """Async test client wired to the per-test database and cache services."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    overrides: dict[Any, Any] = {
        get_db: override_get_db,
        get_segment_lookup: lambda: lookup,
        get_cache_writer: lambda: writer,
        get_cache_administration: lambda: admin,
        get_memory_cache: lambda: memory,
    }
    app.dependency_overrides.update(overrides)

    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        # Remove only the overrides installed here
        for dependency in overrides:
            app.dependency_overrides.pop(dependency, None)
