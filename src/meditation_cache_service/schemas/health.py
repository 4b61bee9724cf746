"""Health check response schema."""

from typing import Literal

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Service status as reported by GET /health.

    Keys stay snake_case: monitors consume this endpoint, not the
    meditation generator.
    """

    status: Literal["ok", "degraded"] = Field(..., description="Overall service status")
    version: str = Field(..., description="Service version", examples=["0.1.0"])
    database: Literal["connected", "disconnected"] = Field(
        ..., description="Segment store connectivity"
    )
    embedding_provider: str = Field(
        ..., description="Configured embedding provider", examples=["openai", "ollama"]
    )
    semantic_search: Literal["enabled", "disabled", "unavailable"] = Field(
        ...,
        description=(
            "enabled: semantic lookup runs on exact misses; disabled: turned off "
            "by configuration; unavailable: no embedding provider could be built"
        ),
    )
