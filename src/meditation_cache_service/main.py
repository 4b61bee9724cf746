"""FastAPI application entry point."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .database import engine, init_models
from .logging_config import configure_logging, get_logger
from .routers import cache_admin_router, health_router, segments_router

configure_logging(
    log_level=settings.log_level,
    json_logs=settings.log_json,
    library_levels={
        "sqlalchemy.engine": settings.sqlalchemy_log_level,
        "sqlalchemy.pool": settings.sqlalchemy_log_level,
    },
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager."""
    logger.info("app_starting", app=settings.app_name, version=settings.app_version)

    # Test database connection (non-blocking - service can start without DB)
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("database_connection_verified")
        if settings.database_create_tables:
            await init_models()
            logger.info("database_tables_ready")
    except (SQLAlchemyError, OSError) as e:
        logger.warning(
            "database_connection_failed",
            error=str(e),
            note="service starts; /health reports degraded and lookups degrade to misses",
        )

    yield

    logger.info("app_shutting_down")
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# When CORS_ALLOW_ALL=true, allows all origins (["*"])
# Otherwise, uses comma-separated CORS_ORIGINS list
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Health check router (no prefix)
app.include_router(health_router)

# Generation-time lookup and save
app.include_router(segments_router)

# Cache administration
app.include_router(cache_admin_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "Meditation Cache Service API"}
