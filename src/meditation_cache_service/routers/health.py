"""Health check endpoint."""

from fastapi import APIRouter, Depends, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from meditation_cache_service.config import settings
from meditation_cache_service.database import get_db
from meditation_cache_service.dependencies import get_optional_embedding_provider
from meditation_cache_service.embeddings import EmbeddingProvider
from meditation_cache_service.logging_config import get_logger
from meditation_cache_service.schemas.health import HealthResponse

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


def _example(summary: str, **overrides: str) -> dict:
    value = {
        "status": "ok",
        "version": "0.1.0",
        "database": "connected",
        "embedding_provider": "openai",
        "semantic_search": "enabled",
    }
    return {"summary": summary, "value": {**value, **overrides}}


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check endpoint",
    description=(
        "Reports segment store connectivity and whether semantic lookup can run. "
        "Always answers 200; this endpoint does NOT use the /api/v1 prefix."
    ),
    responses={
        200: {
            "description": "Service is healthy or degraded",
            "content": {
                "application/json": {
                    "examples": {
                        "healthy": _example("All systems operational"),
                        "degraded": _example(
                            "Segment store unavailable",
                            status="degraded",
                            database="disconnected",
                        ),
                        "exact_only": _example(
                            "No embedding provider configured",
                            semantic_search="unavailable",
                        ),
                    }
                }
            },
        }
    },
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    provider: EmbeddingProvider | None = Depends(get_optional_embedding_provider),
) -> HealthResponse:
    """Report store connectivity and semantic lookup availability.

    A store outage yields status="degraded" rather than an error response,
    so monitors can tell a dead process from one serving degraded misses.
    A missing embedding provider does not degrade the service: exact
    lookups and writes still work.
    """
    database_status = "disconnected"
    try:
        await db.execute(text("SELECT 1"))
        database_status = "connected"
    except (SQLAlchemyError, OSError) as e:
        logger.warning("health_database_unreachable", error=str(e))

    if not settings.cache_semantic_search_enabled:
        semantic_search = "disabled"
    elif provider is None:
        semantic_search = "unavailable"
    else:
        semantic_search = "enabled"

    return HealthResponse(
        status="ok" if database_status == "connected" else "degraded",
        version=settings.app_version,
        database=database_status,
        embedding_provider=settings.embedding_provider,
        semantic_search=semantic_search,
    )
