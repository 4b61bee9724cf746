"""Cache administration: statistics, duplicate analysis, repair and optimization.

Design Decisions:

1. Maintenance State:
   - Idle -> Analyzing -> (Reporting | Optimizing | Repairing) -> Idle
   - Mutating runs (optimize with dry_run=False, repair) hold an asyncio.Lock.
     A second mutating request while one is running raises
     MaintenanceBusyError instead of queueing behind it.
   - Read-only operations never take the lock.

2. Duplicate Clusters:
   - Rows are partitioned by (voice_id, voice_style, language, embedding_model);
     only rows in the same partition can be merged.
   - Pairs with cosine similarity >= duplicate threshold are joined with
     union-find, so clusters are transitive connected components.
   - Ordering is deterministic: members by id, clusters by smallest member.

3. Optimization:
   - Survivor: highest usage_count, then most recent last_used_at, then lowest id.
   - Each cluster is merged in its own administrative transaction: the
     survivor absorbs the losers' usage and latest use, the losers are
     deleted, or nothing changes.
   - Dry-run computes the identical plan and performs no mutation.

4. Repair:
   - Rows without a vector from the active model are re-embedded in
     keyset-paged batches. A failed batch falls back to one request per row,
     so one bad row costs one error, not a whole batch.
   - Rows deleted while the repair runs are counted as skipped.
"""

import asyncio
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

import structlog

from meditation_cache_service.cache.fingerprint import normalize_for_embedding
from meditation_cache_service.cache.memory import ReadThroughCache
from meditation_cache_service.cache.similarity import (
    average_pairwise_similarity,
    find_clusters,
    normalize_rows,
)
from meditation_cache_service.cache.store import SegmentFilter, SegmentStore
from meditation_cache_service.config import settings
from meditation_cache_service.embeddings.base import EmbeddingProvider
from meditation_cache_service.exceptions import (
    CacheError,
    MaintenanceBusyError,
    NotFoundError,
    ProviderUnavailableError,
    StoreUnavailableError,
)
from meditation_cache_service.logging_config import get_logger
from meditation_cache_service.models import AudioSegment
from meditation_cache_service.retry import embed_with_retry

logger = get_logger(__name__)

PartitionKey = tuple[str, str, str, str | None]


class MaintenanceState(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    REPORTING = "reporting"
    OPTIMIZING = "optimizing"
    REPAIRING = "repairing"


@dataclass(frozen=True)
class CoverageStats:
    total_segments: int
    with_embeddings: int
    without_embeddings: int
    coverage_percent: float
    distinct_languages: list[str]


@dataclass(frozen=True)
class UsageStats:
    total_segments: int
    total_usage: int
    average_usage: float
    total_duration: float
    total_size: int


@dataclass
class DuplicateCluster:
    """Segments that are transitively similar above the duplicate threshold."""

    members: list[int]
    avg_pairwise_similarity: float
    voice_id: str
    voice_style: str
    language: str
    embedding_model: str | None = None
    segments: list[AudioSegment] = field(default_factory=list, repr=False, compare=False)


@dataclass
class ClusterAnalysis:
    total_segments: int
    clusters_found: int
    duplicate_clusters: list[DuplicateCluster]
    recommendations: list[str]
    segments_without_embeddings: int = 0


@dataclass
class RepairResult:
    processed: int = 0
    errors: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class MergePlan:
    """Survivor and losers chosen for one duplicate cluster."""

    survivor_id: int
    loser_ids: list[int]
    usage_count_after: int
    space_saved: int


@dataclass
class OptimizationResult:
    duplicates_found: int
    space_saved: int
    items_removed: int
    dry_run: bool
    merges: list[MergePlan] = field(default_factory=list)
    errors: int = 0


@dataclass
class CacheExport:
    """Full cache dump: metadata rows, vectors and coverage statistics."""

    segments: list[AudioSegment]
    embeddings: list[dict]
    statistics: CoverageStats


def survivor_rank(segment: AudioSegment) -> tuple:
    """Sort key (descending): usage, recency, then lower id."""
    return (segment.usage_count, segment.last_used_at, -segment.id)


def plan_merge(cluster: DuplicateCluster) -> MergePlan:
    """Choose the survivor of a cluster and account the merge."""
    ordered = sorted(cluster.segments, key=survivor_rank, reverse=True)
    survivor, losers = ordered[0], ordered[1:]
    return MergePlan(
        survivor_id=survivor.id,
        loser_ids=sorted(loser.id for loser in losers),
        usage_count_after=sum(segment.usage_count for segment in ordered),
        space_saved=sum(loser.file_size or 0 for loser in losers),
    )


class CacheAdministration:
    """Administrative operations over the segment store.

    Example:
        >>> admin = CacheAdministration(store, provider)
        >>> result = await admin.optimize_cache(dry_run=True)
        >>> result.items_removed
        0
    """

    def __init__(
        self,
        store: SegmentStore,
        embedding_provider: EmbeddingProvider | None = None,
        memory: ReadThroughCache | None = None,
        *,
        duplicate_threshold: float | None = None,
        repair_batch_size: int | None = None,
        repair_batch_delay_seconds: float | None = None,
        embed_max_retries: int | None = None,
        embed_retry_base_delay: float | None = None,
    ):
        self.store = store
        self.embedding_provider = embedding_provider
        self.memory = memory
        self.duplicate_threshold = (
            duplicate_threshold
            if duplicate_threshold is not None
            else settings.cache_duplicate_threshold
        )
        self.repair_batch_size = repair_batch_size or settings.cache_repair_batch_size
        self.repair_batch_delay_seconds = (
            repair_batch_delay_seconds
            if repair_batch_delay_seconds is not None
            else settings.cache_repair_batch_delay_seconds
        )
        self.embed_max_retries = embed_max_retries or settings.embedding_max_retries
        self.embed_retry_base_delay = (
            embed_retry_base_delay
            if embed_retry_base_delay is not None
            else settings.embedding_retry_base_delay
        )

        self._lock = asyncio.Lock()
        self._run_state = MaintenanceState.IDLE
        self._read_states: Counter[MaintenanceState] = Counter()

    @property
    def state(self) -> MaintenanceState:
        """Current maintenance state (a mutating run takes precedence)."""
        if self._lock.locked():
            return self._run_state
        for state in (MaintenanceState.ANALYZING, MaintenanceState.REPORTING):
            if self._read_states[state]:
                return state
        return MaintenanceState.IDLE

    @asynccontextmanager
    async def _exclusive(self, operation: str) -> AsyncIterator[None]:
        if self._lock.locked():
            raise MaintenanceBusyError(
                f"Cannot start {operation}: {self._run_state.value} already in progress"
            )
        async with self._lock:
            with structlog.contextvars.bound_contextvars(
                maintenance_run=uuid4().hex[:8], maintenance_operation=operation
            ):
                try:
                    yield
                finally:
                    self._run_state = MaintenanceState.IDLE

    @asynccontextmanager
    async def _reading(self, state: MaintenanceState) -> AsyncIterator[None]:
        self._read_states[state] += 1
        try:
            yield
        finally:
            self._read_states[state] -= 1

    # Statistics

    async def compute_coverage_stats(self) -> CoverageStats:
        """Embedding coverage over the whole cache."""
        counts = await self.store.coverage_counts()
        without = counts.total - counts.with_embeddings
        coverage = (counts.with_embeddings / counts.total * 100) if counts.total else 0.0
        return CoverageStats(
            total_segments=counts.total,
            with_embeddings=counts.with_embeddings,
            without_embeddings=without,
            coverage_percent=round(coverage, 2),
            distinct_languages=counts.languages,
        )

    async def compute_usage_stats(self) -> UsageStats:
        """Usage, duration and size totals over the whole cache."""
        totals = await self.store.usage_totals()
        average = totals.total_usage / totals.total if totals.total else 0.0
        return UsageStats(
            total_segments=totals.total,
            total_usage=totals.total_usage,
            average_usage=round(average, 2),
            total_duration=totals.total_duration,
            total_size=totals.total_size,
        )

    # Analysis

    async def analyze_semantic_clusters(self, threshold: float | None = None) -> ClusterAnalysis:
        """Find duplicate clusters. Read-only.

        Args:
            threshold: Duplicate threshold override (default: configured value).
        """
        async with self._reading(MaintenanceState.ANALYZING):
            return await self._analyze(threshold)

    async def _analyze(self, threshold: float | None = None) -> ClusterAnalysis:
        threshold = threshold if threshold is not None else self.duplicate_threshold

        partitions: dict[PartitionKey, list[AudioSegment]] = {}
        analyzed = 0
        without_embeddings = 0
        async for segment in self.store.scan_all():
            if segment.embedding is None:
                without_embeddings += 1
                continue
            analyzed += 1
            key = (segment.voice_id, segment.voice_style, segment.language, segment.embedding_model)
            partitions.setdefault(key, []).append(segment)

        clusters: list[DuplicateCluster] = []
        for key in sorted(partitions, key=lambda k: tuple(part or "" for part in k)):
            clusters.extend(self._partition_clusters(key, partitions[key], threshold))
        clusters.sort(key=lambda cluster: cluster.members[0])

        analysis = ClusterAnalysis(
            total_segments=analyzed,
            clusters_found=len(clusters),
            duplicate_clusters=clusters,
            recommendations=self._recommendations(analyzed, clusters, without_embeddings),
            segments_without_embeddings=without_embeddings,
        )
        logger.info(
            "cache_analysis_completed",
            analyzed=analyzed,
            clusters_found=len(clusters),
            without_embeddings=without_embeddings,
            threshold=threshold,
        )
        return analysis

    @staticmethod
    def _partition_clusters(
        key: PartitionKey, segments: list[AudioSegment], threshold: float
    ) -> list[DuplicateCluster]:
        # Vectors of another dimension cannot share a matrix with the rest
        dimension = Counter(len(s.embedding) for s in segments).most_common(1)[0][0]
        comparable = [s for s in segments if len(s.embedding) == dimension]
        if len(comparable) < len(segments):
            logger.warning(
                "cache_analysis_dimension_mismatch",
                voice_id=key[0],
                voice_style=key[1],
                skipped=len(segments) - len(comparable),
            )

        normalized = normalize_rows([s.embedding for s in comparable])
        result = []
        for group in find_clusters(normalized, threshold):
            members = [comparable[i] for i in group]
            result.append(
                DuplicateCluster(
                    members=[s.id for s in members],
                    avg_pairwise_similarity=round(
                        average_pairwise_similarity(normalized, group), 6
                    ),
                    voice_id=key[0],
                    voice_style=key[1],
                    language=key[2],
                    embedding_model=key[3],
                    segments=members,
                )
            )
        return result

    @staticmethod
    def _recommendations(
        analyzed: int, clusters: list[DuplicateCluster], without_embeddings: int
    ) -> list[str]:
        redundant = sum(len(cluster.members) - 1 for cluster in clusters)
        recommendations = [
            f"{analyzed} segments with embeddings analyzed",
            f"{len(clusters)} high-similarity clusters detected",
        ]
        if clusters:
            recommendations.append(
                f"Run optimization to consolidate {redundant} redundant segments"
            )
        else:
            recommendations.append("Cache is optimized")
        if without_embeddings:
            recommendations.append(
                f"Run embedding repair for {without_embeddings} segments without embeddings"
            )
        return recommendations

    # Optimization

    async def optimize_cache(self, dry_run: bool = True) -> OptimizationResult:
        """Merge each duplicate cluster into its survivor.

        Args:
            dry_run: If True, report the plan without mutating anything.

        Raises:
            MaintenanceBusyError: If another mutating run is in progress.
        """
        if dry_run:
            async with self._reading(MaintenanceState.ANALYZING):
                analysis = await self._analyze()
            plans = [plan_merge(cluster) for cluster in analysis.duplicate_clusters]
            return OptimizationResult(
                duplicates_found=analysis.clusters_found,
                space_saved=sum(plan.space_saved for plan in plans),
                items_removed=0,
                dry_run=True,
                merges=plans,
            )

        async with self._exclusive("optimization"):
            self._run_state = MaintenanceState.ANALYZING
            analysis = await self._analyze()
            plans = [plan_merge(cluster) for cluster in analysis.duplicate_clusters]

            self._run_state = MaintenanceState.OPTIMIZING
            result = OptimizationResult(
                duplicates_found=analysis.clusters_found,
                space_saved=0,
                items_removed=0,
                dry_run=False,
            )
            for plan in plans:
                await self._apply_merge(plan, result)

            logger.info(
                "cache_optimization_completed",
                duplicates_found=result.duplicates_found,
                items_removed=result.items_removed,
                space_saved=result.space_saved,
                errors=result.errors,
            )
            return result

    async def _apply_merge(self, plan: MergePlan, result: OptimizationResult) -> None:
        try:
            async with self.store.administrative() as transaction:
                survivor, removed = await transaction.merge_cluster(
                    plan.survivor_id, plan.loser_ids
                )
        except (NotFoundError, StoreUnavailableError) as e:
            result.errors += 1
            logger.warning("cache_merge_failed", survivor_id=plan.survivor_id, error=str(e))
            return

        removed_ids = {segment.id for segment in removed}
        applied = MergePlan(
            survivor_id=survivor.id,
            loser_ids=sorted(removed_ids),
            usage_count_after=survivor.usage_count,
            space_saved=sum(segment.file_size or 0 for segment in removed),
        )
        result.merges.append(applied)
        result.items_removed += len(removed)
        result.space_saved += applied.space_saved

        if self.memory is not None:
            self.memory.invalidate_ids(removed_ids)
        logger.info(
            "cache_cluster_merged",
            survivor_id=survivor.id,
            removed=sorted(removed_ids),
            usage_count=survivor.usage_count,
        )

    # Repair

    async def repair_missing_embeddings(
        self,
        batch_size: int | None = None,
        *,
        language: str | None = None,
        force: bool = False,
    ) -> RepairResult:
        """Compute embeddings for rows that lack one from the active model.

        Args:
            batch_size: Rows per embedding request (default from settings).
            language: Restrict to one language.
            force: Re-embed every row in scope, even up-to-date ones.

        Returns:
            Counts of rows updated, failed and skipped; never raises for
            per-row failures.

        Raises:
            MaintenanceBusyError: If another mutating run is in progress.
            ProviderUnavailableError: If no embedding provider is configured.
        """
        if self.embedding_provider is None:
            raise ProviderUnavailableError("No embedding provider configured")
        batch_size = batch_size or self.repair_batch_size
        model_name = self.embedding_provider.model_name

        async with self._exclusive("repair"):
            self._run_state = MaintenanceState.REPAIRING
            segment_filter = SegmentFilter(
                language=language,
                stale_for_model=None if force else model_name,
            )
            result = RepairResult()
            after_id: int | None = None

            while True:
                batch = await self.store.scan_page(segment_filter, after_id, batch_size)
                if not batch:
                    break
                after_id = batch[-1].id

                await self._repair_batch(batch, model_name, result)
                logger.info(
                    "cache_repair_progress",
                    processed=result.processed,
                    errors=result.errors,
                    skipped=result.skipped,
                )

                if len(batch) < batch_size:
                    break
                if self.repair_batch_delay_seconds > 0:
                    await asyncio.sleep(self.repair_batch_delay_seconds)

            logger.info(
                "cache_repair_completed",
                processed=result.processed,
                errors=result.errors,
                skipped=result.skipped,
                model=model_name,
            )
            return result

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        vectors = await embed_with_retry(
            self.embedding_provider,
            texts,
            max_retries=self.embed_max_retries,
            base_delay=self.embed_retry_base_delay,
        )
        if len(vectors) != len(texts):
            raise ProviderUnavailableError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors

    async def _repair_batch(
        self, batch: list[AudioSegment], model_name: str, result: RepairResult
    ) -> None:
        texts = [normalize_for_embedding(segment.text_content) for segment in batch]

        try:
            pairs = list(zip(batch, await self._embed(texts)))
        except ProviderUnavailableError as e:
            logger.warning("cache_repair_batch_failed", size=len(batch), error=str(e))
            pairs = []
            for segment, text in zip(batch, texts):
                try:
                    vectors = await self._embed([text])
                except ProviderUnavailableError as item_error:
                    result.errors += 1
                    logger.warning(
                        "cache_repair_item_failed",
                        segment_id=segment.id,
                        error=str(item_error),
                    )
                    continue
                pairs.append((segment, vectors[0]))

        for segment, vector in pairs:
            try:
                await self.store.update_embedding(segment.id, vector, model_name)
            except NotFoundError:
                result.skipped += 1
                logger.info("cache_repair_item_vanished", segment_id=segment.id)
                continue
            except CacheError as e:
                result.errors += 1
                logger.warning("cache_repair_item_failed", segment_id=segment.id, error=str(e))
                continue
            result.processed += 1

    # Export

    async def iter_export(self) -> AsyncIterator[AudioSegment]:
        """Stream every row in id order."""
        async with self._reading(MaintenanceState.REPORTING):
            async for segment in self.store.scan_all():
                yield segment

    async def download_all_segments(self) -> CacheExport:
        """Collect the full cache export."""
        segments: list[AudioSegment] = []
        embeddings: list[dict] = []
        async for segment in self.iter_export():
            segments.append(segment)
            embeddings.append(
                {
                    "id": segment.id,
                    "embedding": segment.embedding,
                    "similarity_threshold": segment.similarity_threshold,
                }
            )
        statistics = await self.compute_coverage_stats()
        logger.info("cache_export_completed", segments=len(segments))
        return CacheExport(segments=segments, embeddings=embeddings, statistics=statistics)
