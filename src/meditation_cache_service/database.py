"""Async database engine, session factory and declarative base."""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from meditation_cache_service.config import settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


def _engine_options() -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.debug, "pool_pre_ping": True}
    if settings.async_database_url.startswith("postgresql+asyncpg://"):
        # asyncpg connect timeout; the store applies its own per-query deadline
        options["connect_args"] = {"timeout": settings.database_connect_timeout_seconds}
    return options


engine = create_async_engine(settings.async_database_url, **_engine_options())

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a database session."""
    async with AsyncSessionLocal() as session:
        yield session


async def init_models() -> None:
    """Create the segment cache table and its indexes if they do not exist yet."""
    # Import models so they are registered with Base.metadata
    from meditation_cache_service import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
