"""Segment lookup and write schemas."""

from datetime import datetime
from typing import Literal

from pydantic import Field

from .base import CamelModel


class SegmentResponse(CamelModel):
    """Cached segment metadata (without the embedding vector)."""

    id: int
    text_content: str
    text_hash: str
    voice_id: str
    voice_gender: str
    voice_style: str
    audio_url: str
    audio_duration: float | None = None
    file_size: int | None = None
    usage_count: int
    created_at: datetime
    last_used_at: datetime
    language: str
    embedding_model: str | None = None
    similarity_threshold: float | None = None
    has_embedding: bool = False


class LookupRequest(CamelModel):
    """Generation-time lookup for one segment.

    Example:
        >>> LookupRequest(text="Breathe in.", voice_id="v1", voice_style="calm")
    """

    text: str = Field(min_length=1, description="Segment text")
    voice_id: str = Field(min_length=1, max_length=50)
    voice_style: str = Field(min_length=1, max_length=20)
    language: str | None = Field(default=None, max_length=10)
    use_semantic: bool | None = Field(
        default=None,
        description="Override semantic search for this request (None = server default)",
    )
    threshold: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Similarity threshold for candidates without their own",
    )


class SimilarCandidate(CamelModel):
    segment: SegmentResponse
    similarity: float


class LookupResponse(CamelModel):
    outcome: Literal["exact", "semantic", "miss"]
    source: Literal["memory", "database", "fallback"]
    degraded: bool = False
    similarity: float | None = None
    segment: SegmentResponse | None = None
    candidates: list[SimilarCandidate] = Field(default_factory=list)


class SaveSegmentRequest(CamelModel):
    """Freshly synthesized segment to persist."""

    text: str = Field(min_length=1)
    voice_id: str = Field(min_length=1, max_length=50)
    voice_gender: str = Field(min_length=1, max_length=10)
    voice_style: str = Field(min_length=1, max_length=20)
    audio_url: str = Field(min_length=1)
    audio_duration: float | None = Field(default=None, ge=0.0)
    file_size: int | None = Field(default=None, ge=0)
    language: str | None = Field(default=None, max_length=10)
