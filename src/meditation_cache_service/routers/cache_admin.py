"""Cache administration endpoints.

Endpoint Structure:
   - GET  /api/v1/cache/stats        - Embedding coverage
   - GET  /api/v1/cache/stats/usage  - Usage, duration and size totals
   - GET  /api/v1/cache/analyze      - Duplicate cluster analysis (read-only)
   - POST /api/v1/cache/optimize     - Merge duplicates (dryRun defaults to true)
   - POST /api/v1/cache/repair       - Backfill missing embeddings
   - GET  /api/v1/cache/download     - Full export
   - GET  /api/v1/cache/stats/memory - In-process memory layer counters
   - POST /api/v1/cache/memory/clear - Drop the memory layer (database untouched)

Error Handling:
   - 409 when another mutating maintenance run is in progress
   - 503 when the segment store or embedding provider is unreachable
"""

from fastapi import APIRouter, Depends, HTTPException, status

from meditation_cache_service.admin.engine import CacheAdministration
from meditation_cache_service.cache.memory import ReadThroughCache
from meditation_cache_service.config import settings
from meditation_cache_service.dependencies import get_cache_administration, get_memory_cache
from meditation_cache_service.exceptions import (
    MaintenanceBusyError,
    ProviderUnavailableError,
    StoreUnavailableError,
)
from meditation_cache_service.logging_config import get_logger
from meditation_cache_service.schemas.cache import (
    CacheExportResponse,
    ClusterAnalysisResponse,
    CoverageStatsResponse,
    MemoryClearResponse,
    MemoryStatsResponse,
    OptimizationResponse,
    OptimizeRequest,
    RepairRequest,
    RepairResponse,
    UsageStatsResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix=f"{settings.api_v1_prefix}/cache", tags=["cache"])


def _unavailable(error: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=str(error),
    )


@router.get("/stats", response_model=CoverageStatsResponse)
async def get_coverage_stats(
    admin: CacheAdministration = Depends(get_cache_administration),
) -> CoverageStatsResponse:
    """Embedding coverage across the cache."""
    try:
        stats = await admin.compute_coverage_stats()
    except StoreUnavailableError as e:
        raise _unavailable(e) from e
    return CoverageStatsResponse.model_validate(stats)


@router.get("/stats/usage", response_model=UsageStatsResponse)
async def get_usage_stats(
    admin: CacheAdministration = Depends(get_cache_administration),
) -> UsageStatsResponse:
    """Usage totals across the cache."""
    try:
        stats = await admin.compute_usage_stats()
    except StoreUnavailableError as e:
        raise _unavailable(e) from e
    return UsageStatsResponse.model_validate(stats)


@router.get("/analyze", response_model=ClusterAnalysisResponse)
async def analyze_clusters(
    admin: CacheAdministration = Depends(get_cache_administration),
) -> ClusterAnalysisResponse:
    """Detect duplicate clusters without changing anything."""
    try:
        analysis = await admin.analyze_semantic_clusters()
    except StoreUnavailableError as e:
        raise _unavailable(e) from e
    return ClusterAnalysisResponse.model_validate(analysis)


@router.post("/optimize", response_model=OptimizationResponse)
async def optimize_cache(
    request: OptimizeRequest | None = None,
    admin: CacheAdministration = Depends(get_cache_administration),
) -> OptimizationResponse:
    """Merge duplicate clusters into their survivors.

    Example:
        POST /api/v1/cache/optimize
        {"dryRun": false}
    """
    dry_run = request.dry_run if request is not None else True
    try:
        result = await admin.optimize_cache(dry_run=dry_run)
    except MaintenanceBusyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except StoreUnavailableError as e:
        raise _unavailable(e) from e
    return OptimizationResponse.model_validate(result)


@router.post("/repair", response_model=RepairResponse)
async def repair_embeddings(
    request: RepairRequest | None = None,
    admin: CacheAdministration = Depends(get_cache_administration),
) -> RepairResponse:
    """Compute missing embeddings in batches."""
    request = request or RepairRequest()
    try:
        result = await admin.repair_missing_embeddings(
            request.batch_size,
            language=request.language,
            force=request.force,
        )
    except MaintenanceBusyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except (StoreUnavailableError, ProviderUnavailableError) as e:
        raise _unavailable(e) from e
    return RepairResponse.model_validate(result)


@router.get("/download", response_model=CacheExportResponse)
async def download_cache(
    admin: CacheAdministration = Depends(get_cache_administration),
) -> CacheExportResponse:
    """Export every segment with its vector and coverage statistics."""
    try:
        export = await admin.download_all_segments()
    except StoreUnavailableError as e:
        raise _unavailable(e) from e
    return CacheExportResponse.model_validate(export)


@router.get("/stats/memory", response_model=MemoryStatsResponse)
async def get_memory_stats(
    memory: ReadThroughCache = Depends(get_memory_cache),
) -> MemoryStatsResponse:
    """Memory layer size and hit rate for this worker process."""
    return MemoryStatsResponse.model_validate(memory.stats)


@router.post("/memory/clear", response_model=MemoryClearResponse)
async def clear_memory_cache(
    memory: ReadThroughCache = Depends(get_memory_cache),
) -> MemoryClearResponse:
    """Empty the memory layer; the next lookups read through to the store."""
    cleared = memory.clear()
    logger.info("cache_memory_cleared", entries=cleared)
    return MemoryClearResponse(entries_cleared=cleared)
