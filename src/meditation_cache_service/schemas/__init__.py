"""Pydantic schemas for API request/response validation."""

from .cache import (
    CacheExportResponse,
    ClusterAnalysisResponse,
    CoverageStatsResponse,
    DuplicateClusterResponse,
    EmbeddingExport,
    MemoryClearResponse,
    MemoryStatsResponse,
    MergePlanResponse,
    OptimizationResponse,
    OptimizeRequest,
    RepairRequest,
    RepairResponse,
    UsageStatsResponse,
)
from .health import HealthResponse
from .segment import (
    LookupRequest,
    LookupResponse,
    SaveSegmentRequest,
    SegmentResponse,
    SimilarCandidate,
)

__all__ = [
    # Health
    "HealthResponse",
    # Segments
    "LookupRequest",
    "LookupResponse",
    "SaveSegmentRequest",
    "SegmentResponse",
    "SimilarCandidate",
    # Cache administration
    "CacheExportResponse",
    "ClusterAnalysisResponse",
    "CoverageStatsResponse",
    "DuplicateClusterResponse",
    "EmbeddingExport",
    "MemoryClearResponse",
    "MemoryStatsResponse",
    "MergePlanResponse",
    "OptimizationResponse",
    "OptimizeRequest",
    "RepairRequest",
    "RepairResponse",
    "UsageStatsResponse",
]
