"""Cache administration schemas.

Field names mirror the administration engine's result records; JSON keys
are camelCase (see CamelModel).
"""

from pydantic import Field

from .base import CamelModel
from .segment import SegmentResponse


class CoverageStatsResponse(CamelModel):
    total_segments: int = Field(ge=0)
    with_embeddings: int = Field(ge=0)
    without_embeddings: int = Field(ge=0)
    coverage_percent: float = Field(ge=0.0, le=100.0)
    distinct_languages: list[str]


class UsageStatsResponse(CamelModel):
    total_segments: int = Field(ge=0)
    total_usage: int = Field(ge=0)
    average_usage: float
    total_duration: float
    total_size: int


class DuplicateClusterResponse(CamelModel):
    members: list[int]
    avg_pairwise_similarity: float
    voice_id: str
    voice_style: str
    language: str
    embedding_model: str | None = None


class ClusterAnalysisResponse(CamelModel):
    total_segments: int
    clusters_found: int
    duplicate_clusters: list[DuplicateClusterResponse]
    recommendations: list[str]
    segments_without_embeddings: int = 0


class OptimizeRequest(CamelModel):
    dry_run: bool = Field(
        default=True,
        description="Report the merge plan without deleting anything",
    )


class MergePlanResponse(CamelModel):
    survivor_id: int
    loser_ids: list[int]
    usage_count_after: int
    space_saved: int


class OptimizationResponse(CamelModel):
    duplicates_found: int
    space_saved: int
    items_removed: int
    dry_run: bool
    merges: list[MergePlanResponse] = Field(default_factory=list)
    errors: int = 0


class RepairRequest(CamelModel):
    batch_size: int | None = Field(default=None, ge=1, le=2048)
    language: str | None = Field(default=None, max_length=10)
    force: bool = False


class RepairResponse(CamelModel):
    processed: int
    errors: int
    skipped: int = 0


class EmbeddingExport(CamelModel):
    id: int
    embedding: list[float] | None = None
    similarity_threshold: float | None = None


class CacheExportResponse(CamelModel):
    segments: list[SegmentResponse]
    embeddings: list[EmbeddingExport]
    statistics: CoverageStatsResponse


class MemoryStatsResponse(CamelModel):
    """Read-through memory layer counters for this process."""

    memory_entries: int = Field(ge=0)
    max_entries: int
    ttl_seconds: float
    hits: int = Field(ge=0)
    misses: int = Field(ge=0)
    hit_rate: float = Field(ge=0.0, le=1.0)


class MemoryClearResponse(CamelModel):
    entries_cleared: int = Field(ge=0)
