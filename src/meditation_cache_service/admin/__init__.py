"""Cache administration engine."""

from .engine import (
    CacheAdministration,
    CacheExport,
    ClusterAnalysis,
    CoverageStats,
    DuplicateCluster,
    MaintenanceState,
    MergePlan,
    OptimizationResult,
    RepairResult,
    UsageStats,
    plan_merge,
)

__all__ = [
    "CacheAdministration",
    "CacheExport",
    "ClusterAnalysis",
    "CoverageStats",
    "DuplicateCluster",
    "MaintenanceState",
    "MergePlan",
    "OptimizationResult",
    "RepairResult",
    "UsageStats",
    "plan_merge",
]
