"""
Tiered Vector Lakehouse
=======================
Coordinates the hot, warm and cold tiers of one shard.

Tiers:
  - HOT (SQLite + RAM): full vectors in ``hot_vectors``, 256-dim Matryoshka
    copies in the in-memory two-phase index.
  - WARM (blob store): one Parquet partition per cluster, ``vectors/<cluster>.parquet``.
  - COLD (blob store): retention-expired rows, ``archive/<cluster>.parquet``.

Logic:
  - New vectors start in HOT and are routed to their nearest centroid.
  - ``migrate()`` moves policy-selected HOT items into their cluster's WARM
    partition, then moves retention-expired WARM rows into the archive.
  - Partitions are always rewritten wholesale (live existing rows + new rows).
    A step that raises puts every partition it rewrote back as it was.
  - Partition rows are served only while the tier index places them there.
  - ``search()`` runs the two-phase hot search and, when centroids exist,
    cluster-routed warm/cold searches, then merges all three.

Restarts are cheap: the tier index, centroid table and hot vectors live in
SQLite and ``initialize()`` restores them.
"""

import asyncio
import dataclasses
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np
from loguru import logger

from vectorlake.core._utils import now_ms, run_in_thread
from vectorlake.core.cluster_manager import Centroid, ClusterManager
from vectorlake.core.cold_search import (
    ColdVectorSearch,
    SearchMetadata,
    SearchResult,
    combine_tiered_results,
    fetch_partition,
    merge_search_results,
)
from vectorlake.core.config import VectorLakeConfig, get_config
from vectorlake.core.exceptions import (
    BatchMigrationError,
    ConfigurationError,
    ValidationError,
    VectorLakeError,
    WorkflowTimeoutError,
)
from vectorlake.core.migration_policy import (
    AccessStats,
    BatchSelection,
    MigrationItem,
    MigrationPolicyEngine,
    TierUsage,
)
from vectorlake.core.tier_index import TierEntry, TierIndex, TierStatistics, TierUpdate
from vectorlake.core.two_phase_search import TwoPhaseSearch
from vectorlake.core.vector_math import validate_embedding_dimensions
from vectorlake.storage.centroid_store import CentroidStore
from vectorlake.storage.columnar_codec import ColumnarCodec, VectorEntry
from vectorlake.storage.hot_store import HotRecord, HotVectorStore
from vectorlake.storage.partition_store import PartitionMetadata, PartitionStore
from vectorlake.storage.sql_substrate import SqliteSubstrate

SNAPSHOT_VERSION = 1


@dataclass
class MigrationErrorEntry:
    item_id: str
    error: str
    tier: str


@dataclass
class MigrationResult:
    migrated_count: int = 0
    bytes_transferred: int = 0
    hot_to_warm: int = 0
    warm_to_cold: int = 0
    duration_ms: float = 0.0
    is_emergency: bool = False
    errors: List[MigrationErrorEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class LakehouseSearchMetadata:
    hot_candidates: int = 0
    clusters_searched: List[str] = field(default_factory=list)
    total_vectors_scanned: int = 0
    missing_partitions: List[str] = field(default_factory=list)
    failed_partitions: List[str] = field(default_factory=list)
    search_time_ms: float = 0.0


@dataclass
class LakehouseSearchResponse:
    results: List[SearchResult]
    metadata: LakehouseSearchMetadata


@dataclass
class LakehouseStats:
    tiers: TierStatistics
    total_vectors: int
    hot_bytes: int
    last_migration_at: Optional[int]
    total_bytes_migrated: int
    migrations_run: int
    total_searches: int
    average_search_time_ms: float
    two_phase: Dict[str, Any] = field(default_factory=dict)
    partition_store: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def _estimate_entry_bytes(entry: VectorEntry) -> int:
    return int(np.asarray(entry.embedding).shape[0]) * 4 + len(repr(entry.metadata))


class PartitionJournal:
    """
    Pre-images of the partitions one migration step reads and rewrites.

    Every partition is read through ``read()`` before it is written, and
    ``touch()`` marks it as about to change. ``rollback()`` puts each touched
    object back as it was, deleting keys that did not exist before the step.
    """

    def __init__(self, store: PartitionStore, codec: ColumnarCodec):
        self.store = store
        self.codec = codec
        self._images: Dict[str, Optional[Tuple[bytes, Optional[PartitionMetadata]]]] = {}
        self._touched: List[str] = []

    async def read(self, key: str) -> List[VectorEntry]:
        data = await self.store.get(key)
        if key not in self._images:
            self._images[key] = (data, await self.store.head(key)) if data is not None else None
        if data is None:
            return []
        return await run_in_thread(self.codec.decode_partition, data)

    def touch(self, key: str) -> None:
        if key not in self._images:
            raise KeyError(f"partition {key} was not read before being rewritten")
        if key not in self._touched:
            self._touched.append(key)

    async def rollback(self) -> List[str]:
        """Restore touched partitions, newest first; returns keys that could not be restored."""
        failed: List[str] = []
        for key in reversed(self._touched):
            image = self._images[key]
            try:
                if image is None:
                    await self.store.delete(key)
                else:
                    await self.store.put(key, image[0], image[1])
            except VectorLakeError as e:
                logger.error(f"Could not restore partition {key}: {e}")
                failed.append(key)
        if self._touched:
            logger.warning(f"Rolled back {len(self._touched) - len(failed)} partition(s)")
        self._touched.clear()
        return failed


class Lakehouse:
    """
    Explicit composition of ClusterManager, TierIndex, PartitionStore,
    ColumnarCodec, TwoPhaseSearch, ColdVectorSearch and MigrationPolicyEngine.
    """

    def __init__(
        self,
        config: Optional[VectorLakeConfig] = None,
        substrate: Optional[SqliteSubstrate] = None,
        partition_store: Optional[PartitionStore] = None,
        codec: Optional[ColumnarCodec] = None,
    ):
        self.config = config or get_config()
        search_cfg = self.config.search
        if self.config.cluster.dimension != search_cfg.full_dimension:
            raise ConfigurationError(
                config_key="cluster.dimension",
                reason=(
                    f"Centroids route full embeddings: cluster.dimension={self.config.cluster.dimension} "
                    f"must equal search.full_dimension={search_cfg.full_dimension}"
                ),
            )

        self._owns_substrate = substrate is None
        self.substrate = substrate or SqliteSubstrate(self.config.paths.database)
        self.clusters = ClusterManager(self.config.cluster)
        self.index = TierIndex(self.substrate)
        self.centroid_store = CentroidStore(self.substrate)
        self.hot_store = HotVectorStore(self.substrate)
        self.store = partition_store or PartitionStore(config=self.config.partition_store)
        self.codec = codec or ColumnarCodec(self.config.codec)

        self.two_phase = TwoPhaseSearch(
            hot_dimension=search_cfg.hot_dimension,
            full_dimension=search_cfg.full_dimension,
            candidate_pool_size=search_cfg.candidate_pool_size,
        )
        self.two_phase.set_full_embedding_provider(self._full_embeddings)
        self.warm_search = ColdVectorSearch(
            self.store, codec=self.codec, config=search_cfg, row_filter=self._live_ids
        )
        self.cold_search = ColdVectorSearch(
            self.store, codec=self.codec, config=search_cfg, row_filter=self._live_ids
        )
        self.policy = MigrationPolicyEngine(self.config.migration)

        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._migration_lock = asyncio.Lock()
        self._centroids_dirty = False

        self._last_migration_at: Optional[int] = None
        self._total_bytes_migrated = 0
        self._migrations_run = 0
        self._total_searches = 0
        self._search_time_ms = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create schemas and restore centroids plus the hot index. Idempotent."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self.index.ensure_schema()
            self.centroid_store.ensure_schema()
            self.hot_store.ensure_schema()

            centroids = self.centroid_store.load()
            if centroids:
                self.clusters.set_centroids(centroids)
                self._refresh_routing()

            restored = 0
            for record in self.hot_store.all():
                try:
                    self.two_phase.add_to_hot_index(record.id, record.embedding, record.metadata)
                    restored += 1
                except ValidationError as e:
                    logger.warning(f"Skipping hot vector {record.id} on restore: {e}")

            self._initialized = True
            logger.info(
                f"Lakehouse initialized: {len(centroids)} centroids, {restored} hot vectors restored"
            )

    async def close(self) -> None:
        if self._centroids_dirty:
            self._flush_centroids()
        if self._owns_substrate:
            self.substrate.close()
        logger.info("Lakehouse closed")

    def _flush_centroids(self) -> None:
        self.centroid_store.save(self.clusters.get_centroids())
        self._centroids_dirty = False

    def _refresh_routing(self) -> None:
        self.warm_search.update_cluster_index(self.clusters.build_cluster_index())
        self.cold_search.update_cluster_index(
            self.clusters.build_cluster_index(prefix=self.config.migration.archive_prefix)
        )

    def _warm_key(self, cluster_id: str) -> str:
        return self.clusters.get_cluster_partitions([cluster_id])[0]

    def _archive_key(self, cluster_id: str) -> str:
        return self.clusters.get_cluster_partitions([cluster_id], prefix=self.config.migration.archive_prefix)[0]

    def _cluster_from_key(self, key: str) -> str:
        for prefix in (self.config.cluster.partition_key_prefix, self.config.migration.archive_prefix):
            if key.startswith(prefix):
                key = key[len(prefix):]
                break
        suffix = f".{self.config.cluster.partition_extension}"
        return key[:-len(suffix)] if key.endswith(suffix) else key

    async def _live_ids(self, key: str, ids: List[str]) -> Set[str]:
        """Ids whose tier-index location is ``key``; other rows in that partition are stale."""
        entries = await self.index.get_many(ids)
        return {item_id for item_id, entry in entries.items() if entry.location == key}

    async def _live_rows(self, key: str, rows: List[VectorEntry]) -> List[VectorEntry]:
        if not rows:
            return []
        live = await self._live_ids(key, [r.id for r in rows])
        return [r for r in rows if r.id in live]

    async def _current_cluster(self, id: str) -> Optional[str]:
        """Cluster an existing item is counted in: its hot copy's, else its partition's."""
        record = self.hot_store.get(id)
        if record is not None:
            return record.cluster_id
        entry = await self.index.get(id)
        if entry is not None and entry.location:
            return self._cluster_from_key(entry.location)
        return None

    # ------------------------------------------------------------------
    # Centroids
    # ------------------------------------------------------------------

    async def set_centroids(self, centroids: Sequence[Centroid]) -> None:
        await self.initialize()
        self.clusters.set_centroids(centroids)
        self._flush_centroids()
        self._refresh_routing()

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    async def vectorize(
        self,
        id: str,
        embedding,
        metadata: Optional[Dict[str, Any]] = None,
        source_table: str = "things",
    ) -> TierEntry:
        """
        Store a full embedding in the hot tier and route it to a cluster.

        Raises:
            DimensionMismatchError: embedding length != search.full_dimension.
            ValidationError: zero-magnitude embedding.
        """
        await self.initialize()
        validate_embedding_dimensions(embedding, self.config.search.full_dimension)
        vector = np.asarray(embedding, dtype=np.float32)

        # Index first: it rejects zero vectors before anything is persisted
        self.two_phase.add_to_hot_index(id, vector, metadata)

        cluster_id = None
        if self.clusters.has_centroids():
            previous = await self._current_cluster(id)
            if previous and self.clusters.get_centroid(previous):
                assignment = self.clusters.reassign_vector(id, vector, previous)
            else:
                assignment = self.clusters.assign_vector_incremental(id, vector)
            cluster_id = assignment.cluster_id
            self._centroids_dirty = True

        self.hot_store.put(id, source_table, vector, metadata, cluster_id)
        entry = await self.index.record(id, source_table, tier="hot")
        logger.debug(f"Vectorized {id} into hot tier (cluster={cluster_id})")
        return entry

    async def vectorize_batch(self, items: Sequence[Mapping[str, Any]]) -> List[TierEntry]:
        """``items``: mappings with ``id``, ``embedding`` and optional ``metadata`` / ``source_table``."""
        entries = []
        for item in items:
            entries.append(await self.vectorize(
                item["id"],
                item["embedding"],
                item.get("metadata"),
                item.get("source_table", "things"),
            ))
        return entries

    async def delete(self, id: str) -> bool:
        """
        Drop an item from the tier index and hot tier.

        Partition rows stay until the partition is next rewritten, but search
        stops serving them as soon as the tier-index row is gone.
        """
        await self.initialize()
        cluster_id = await self._current_cluster(id)
        self.hot_store.delete_many([id])
        if cluster_id and self.clusters.get_centroid(cluster_id):
            self.clusters.increment_cluster_count(cluster_id, -1)
            self._centroids_dirty = True
        self.two_phase.remove_from_hot_index(id)
        return await self.index.delete(id)

    async def _full_embeddings(self, ids: List[str]) -> Dict[str, Optional[np.ndarray]]:
        records = self.hot_store.get_many(ids)
        return {i: (records[i].embedding if i in records else None) for i in ids}

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        embedding,
        top_k: int = 10,
        candidate_pool_size: Optional[int] = None,
        namespace: Optional[str] = None,
        type: Optional[str] = None,
    ) -> List[SearchResult]:
        response = await self.search_with_metadata(embedding, top_k, candidate_pool_size, namespace, type)
        return response.results

    async def search_with_metadata(
        self,
        embedding,
        top_k: int = 10,
        candidate_pool_size: Optional[int] = None,
        namespace: Optional[str] = None,
        type: Optional[str] = None,
    ) -> LakehouseSearchResponse:
        await self.initialize()
        start = time.perf_counter()
        meta = LakehouseSearchMetadata()
        if top_k <= 0:
            return LakehouseSearchResponse(results=[], metadata=meta)

        hot = await self.two_phase.search(
            embedding,
            top_k=top_k,
            candidate_pool_size=candidate_pool_size,
            namespace=namespace,
            type=type,
        )
        meta.hot_candidates = len(hot)

        partition_results: List[List[SearchResult]] = []
        if len(embedding) == self.config.search.full_dimension and self.clusters.has_centroids():
            responses = await asyncio.gather(
                self.warm_search.search_with_metadata(embedding, limit=top_k, namespace=namespace, type=type),
                self.cold_search.search_with_metadata(embedding, limit=top_k, namespace=namespace, type=type),
            )
            for response in responses:
                partition_results.append(response.results)
                self._merge_metadata(meta, response.metadata)

        cold = merge_search_results(partition_results, top_k)
        results = combine_tiered_results(
            hot, cold, top_k, prefer_cold_similarity=self.config.search.prefer_cold_similarity
        )
        if results:
            await self.index.batch_record_access([r.id for r in results])

        meta.search_time_ms = (time.perf_counter() - start) * 1000
        self._total_searches += 1
        self._search_time_ms += meta.search_time_ms
        return LakehouseSearchResponse(results=results, metadata=meta)

    @staticmethod
    def _merge_metadata(target: LakehouseSearchMetadata, source: SearchMetadata) -> None:
        target.clusters_searched.extend(source.clusters_searched)
        target.total_vectors_scanned += source.total_vectors_scanned
        target.missing_partitions.extend(source.missing_partitions)
        target.failed_partitions.extend(source.failed_partitions)

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    async def migrate(self, atomic: bool = False, timeout_ms: Optional[float] = None) -> MigrationResult:
        """
        Run one migration pass (hot -> warm, then warm -> cold).

        Concurrent callers are queued, never interleaved. Per-item failures
        are collected in ``errors`` unless ``atomic`` is set, in which case
        the first failure raises BatchMigrationError with neither a
        tier-index change nor a partition rewrite left behind for that step.
        ``timeout_ms`` is checked between steps; centroid counts from
        completed steps are persisted either way.
        """
        await self.initialize()
        async with self._migration_lock:
            start = time.perf_counter()
            completed: List[str] = []

            def checkpoint(step: str) -> None:
                completed.append(step)
                if timeout_ms is not None and (time.perf_counter() - start) * 1000 > timeout_ms:
                    raise WorkflowTimeoutError("migrate", timeout_ms, completed)

            result = MigrationResult()
            try:
                selection, usage = await self._select_hot_batch()
                result.is_emergency = usage.percent_full >= 99.0
                checkpoint("evaluate")

                if selection.should_proceed:
                    selection.started_at = now_ms()
                    await self._migrate_hot_to_warm(selection.items, result, atomic)
                    selection.completed_at = now_ms()
                    self.policy.record_migration(selection)
                checkpoint("hot_to_warm")

                await self._migrate_warm_to_cold(result, atomic)
                checkpoint("warm_to_cold")
            finally:
                # Counts changed by completed steps persist even when a later step raises
                if self._centroids_dirty:
                    self._flush_centroids()
                    self._refresh_routing()

            result.migrated_count = result.hot_to_warm + result.warm_to_cold
            result.duration_ms = (time.perf_counter() - start) * 1000
            self._migrations_run += 1
            self._last_migration_at = now_ms()
            self._total_bytes_migrated += result.bytes_transferred
            logger.info(
                f"Migration pass: {result.hot_to_warm} hot->warm, {result.warm_to_cold} warm->cold, "
                f"{result.bytes_transferred} bytes, {len(result.errors)} errors"
                f"{' (emergency)' if result.is_emergency else ''} in {result.duration_ms:.1f}ms"
            )
            return result

    async def _select_hot_batch(self) -> Tuple[BatchSelection, TierUsage]:
        records = self.hot_store.all()
        entries = {e.id: e for e in await self.index.find_by_tier("hot")}
        count, total_bytes = self.hot_store.count_and_bytes()
        usage = TierUsage.from_totals("hot", count, total_bytes, self.config.migration.hot_capacity_bytes)

        items = []
        for record in records:
            entry = entries.get(record.id)
            if entry is None:
                continue
            items.append(MigrationItem(
                id=record.id,
                created_at=entry.created_at,
                size_bytes=record.size_bytes,
                access_count=entry.access_count,
                accessed_at=entry.accessed_at,
                tier="hot",
                cluster_id=record.cluster_id,
            ))

        if usage.percent_full >= 99.0:
            logger.warning(f"Hot tier at {usage.percent_full:.1f}% capacity; running emergency eviction")
            return self.policy.select_emergency_batch(items, usage), usage

        window = self.config.migration.hot_to_warm.access_window_ms
        now = now_ms()
        eligible = []
        for item in items:
            recent = item.access_count if item.accessed_at is not None and now - item.accessed_at <= window else 0
            stats = AccessStats(item.id, item.access_count, recent, item.accessed_at, window)
            if self.policy.evaluate_hot_to_warm(item, usage, stats).should_migrate:
                eligible.append(item)
        return self.policy.select_hot_to_warm_batch(eligible, usage), usage

    async def _read_partition(self, key: str) -> List[VectorEntry]:
        partition = await fetch_partition(self.store, key, self.codec)
        return partition.vectors if partition is not None else []

    async def _write_partition(self, key: str, cluster_id: str, entries: List[VectorEntry]) -> int:
        encoded = self.codec.encode_partition(entries, cluster_id)
        dimensionality = int(np.asarray(entries[0].embedding).shape[0]) if entries else 0
        return await self.store.put(key, encoded.data, PartitionMetadata(
            cluster_id=cluster_id,
            vector_count=len(entries),
            dimensionality=dimensionality,
            compression_type=encoded.metadata.compression,
            size_bytes=len(encoded.data),
        ))

    async def _migrate_hot_to_warm(self, items: Sequence[MigrationItem], result: MigrationResult, atomic: bool) -> None:
        records: Dict[str, HotRecord] = self.hot_store.get_many([i.id for i in items])
        errors: List[MigrationErrorEntry] = []
        groups: Dict[str, List[HotRecord]] = defaultdict(list)

        for item in items:
            record = records.get(item.id)
            if record is None:
                errors.append(MigrationErrorEntry(item.id, "hot vector missing", "warm"))
                continue
            cluster_id = record.cluster_id
            if cluster_id is None or self.clusters.get_centroid(cluster_id) is None:
                if not self.clusters.has_centroids():
                    errors.append(MigrationErrorEntry(item.id, "no centroids configured", "warm"))
                    continue
                cluster_id = self.clusters.assign_vector_incremental(item.id, record.embedding).cluster_id
                self._centroids_dirty = True
            groups[cluster_id].append(record)

        if atomic and errors:
            raise BatchMigrationError([e.item_id for e in errors], reason=errors[0].error)

        journal = PartitionJournal(self.store, self.codec)
        updates: List[TierUpdate] = []
        applied: List[Optional[TierEntry]] = []
        try:
            for cluster_id, members in groups.items():
                key = self._warm_key(cluster_id)
                incoming = {r.id for r in members}
                try:
                    # Rewrites keep only rows the index still places here
                    existing = await self._live_rows(
                        key, [e for e in await journal.read(key) if e.id not in incoming]
                    )
                    new_rows = [
                        VectorEntry(
                            id=r.id,
                            embedding=r.embedding,
                            source_table=r.source_table,
                            source_rowid=r.metadata.get("source_rowid"),
                            metadata=r.metadata,
                            created_at=r.created_at,
                        )
                        for r in members
                    ]
                    journal.touch(key)
                    written = await self._write_partition(key, cluster_id, existing + new_rows)
                except VectorLakeError as e:
                    if atomic:
                        raise BatchMigrationError(sorted(incoming), reason=f"partition {key}: {e}") from e
                    logger.warning(f"Hot->warm write for cluster {cluster_id} failed: {e}")
                    errors.extend(MigrationErrorEntry(r.id, str(e), "warm") for r in members)
                    continue

                result.bytes_transferred += written
                updates.extend(TierUpdate(r.id, "warm", key) for r in members)

            if updates:
                applied = await self.index.batch_migrate(updates, atomic=atomic)
        except VectorLakeError:
            await journal.rollback()
            raise

        if updates:
            moved = [u.id for u, entry in zip(updates, applied) if entry is not None]
            self.hot_store.delete_many(moved)
            for item_id in moved:
                self.two_phase.remove_from_hot_index(item_id)
            result.hot_to_warm += len(moved)

        for err in errors:
            logger.warning(f"Migration of {err.item_id} to {err.tier} failed: {err.error}")
        result.errors.extend(errors)

    async def _repair_archived(self, cluster_id: str, ids: Set[str]) -> Set[str]:
        """
        Point warm entries whose rows already sit in the cluster's archive at
        that archive. Returns the repaired ids.
        """
        archive_key = self._archive_key(cluster_id)
        try:
            archived = {r.id for r in await self._read_partition(archive_key)}
        except VectorLakeError as e:
            logger.warning(f"Could not check {archive_key} for rows absent from warm: {e}")
            return set()
        found = ids & archived
        if found:
            await self.index.batch_migrate([TierUpdate(i, "cold", archive_key) for i in sorted(found)])
            logger.warning(f"Repaired {len(found)} tier entries already archived in {archive_key}")
        return found

    async def _migrate_warm_to_cold(self, result: MigrationResult, atomic: bool) -> None:
        warm_entries = await self.index.find_by_tier("warm")
        expired: Dict[str, List[TierEntry]] = defaultdict(list)
        for entry in warm_entries:
            item = MigrationItem(id=entry.id, created_at=entry.created_at, tier="warm", location=entry.location)
            if self.policy.evaluate_warm_to_cold(item).should_migrate:
                expired[entry.location].append(entry)
        if not expired:
            return

        journal = PartitionJournal(self.store, self.codec)
        plans: List[Tuple[str, str, List[VectorEntry], List[VectorEntry]]] = []
        candidates: List[MigrationItem] = []
        for warm_key, entries in expired.items():
            ids = {e.id for e in entries}
            cluster_id = self._cluster_from_key(warm_key)
            try:
                rows = await journal.read(warm_key)
            except VectorLakeError as e:
                if atomic:
                    raise BatchMigrationError(sorted(ids), reason=f"partition {warm_key}: {e}") from e
                result.errors.extend(MigrationErrorEntry(i, str(e), "cold") for i in sorted(ids))
                continue
            moving = [r for r in rows if r.id in ids]
            missing = ids - {r.id for r in moving}
            if missing:
                repaired = await self._repair_archived(cluster_id, missing)
                result.warm_to_cold += len(repaired)
                missing -= repaired
            if missing:
                if atomic:
                    raise BatchMigrationError(sorted(missing), reason=f"rows absent from {warm_key}")
                result.errors.extend(
                    MigrationErrorEntry(i, f"row absent from {warm_key}", "cold") for i in sorted(missing)
                )
            if moving:
                keeping = await self._live_rows(warm_key, [r for r in rows if r.id not in ids])
                plans.append((warm_key, cluster_id, moving, keeping))
                candidates.extend(
                    MigrationItem(id=r.id, created_at=r.created_at or 0, size_bytes=_estimate_entry_bytes(r), tier="warm")
                    for r in moving
                )

        selection = self.policy.select_warm_to_cold_batch(candidates)
        if not selection.should_proceed:
            logger.debug(f"Warm->cold skipped: {selection.reason} ({selection.total_bytes} bytes)")
            return

        selection.started_at = now_ms()
        updates: List[TierUpdate] = []
        archived_plans: List[Tuple[str, str, List[VectorEntry], Set[str]]] = []
        applied: List[Optional[TierEntry]] = []
        try:
            # Every archive copy lands before any warm row is dropped
            for warm_key, cluster_id, moving, keeping in plans:
                archive_key = self._archive_key(cluster_id)
                moving_ids = {r.id for r in moving}
                try:
                    archived = await self._live_rows(
                        archive_key, [r for r in await journal.read(archive_key) if r.id not in moving_ids]
                    )
                    journal.touch(archive_key)
                    written = await self._write_partition(archive_key, cluster_id, archived + moving)
                except VectorLakeError as e:
                    if atomic:
                        raise BatchMigrationError(sorted(moving_ids), reason=f"archive {archive_key}: {e}") from e
                    logger.warning(f"Warm->cold archive write for {warm_key} failed: {e}")
                    result.errors.extend(MigrationErrorEntry(i, str(e), "cold") for i in sorted(moving_ids))
                    continue
                result.bytes_transferred += written
                updates.extend(TierUpdate(r.id, "cold", archive_key) for r in moving)
                archived_plans.append((warm_key, cluster_id, keeping, moving_ids))

            for warm_key, cluster_id, keeping, moving_ids in archived_plans:
                try:
                    journal.touch(warm_key)
                    if keeping:
                        await self._write_partition(warm_key, cluster_id, keeping)
                    else:
                        await self.store.delete(warm_key)
                except VectorLakeError as e:
                    if atomic:
                        raise BatchMigrationError(sorted(moving_ids), reason=f"partition {warm_key}: {e}") from e
                    # The archive copy is authoritative once the index moves; the
                    # stale warm rows are dropped by the next rewrite
                    logger.warning(f"Warm partition {warm_key} not rewritten after archiving: {e}")

            if updates:
                applied = await self.index.batch_migrate(updates, atomic=atomic)
        except VectorLakeError:
            await journal.rollback()
            raise

        result.warm_to_cold += sum(1 for entry in applied if entry is not None)
        selection.completed_at = now_ms()
        self.policy.record_migration(selection)

    # ------------------------------------------------------------------
    # Configuration & statistics
    # ------------------------------------------------------------------

    def get_config(self) -> VectorLakeConfig:
        return self.config

    def update_config(
        self,
        hot_to_warm: Optional[Dict[str, Any]] = None,
        warm_to_cold: Optional[Dict[str, Any]] = None,
        batch_size: Optional[Dict[str, Any]] = None,
        interval_ms: Optional[int] = None,
    ) -> VectorLakeConfig:
        """Validated partial update of the migration settings."""
        if interval_ms is not None and interval_ms <= 0:
            raise ConfigurationError(
                config_key="migration.interval_ms",
                reason=f"Migration interval must be positive, got {interval_ms}",
            )
        self.policy.update_policy(hot_to_warm=hot_to_warm, warm_to_cold=warm_to_cold, batch_size=batch_size)
        migration = dataclasses.replace(
            self.config.migration,
            hot_to_warm=self.policy.hot_to_warm,
            warm_to_cold=self.policy.warm_to_cold,
            batch_size=self.policy.batch_size,
            interval_ms=interval_ms if interval_ms is not None else self.config.migration.interval_ms,
        )
        self.config = dataclasses.replace(self.config, migration=migration)
        logger.info("Lakehouse migration config updated")
        return self.config

    async def get_stats(self) -> LakehouseStats:
        await self.initialize()
        tiers = await self.index.get_statistics()
        _, hot_bytes = self.hot_store.count_and_bytes()
        return LakehouseStats(
            tiers=tiers,
            total_vectors=tiers.total,
            hot_bytes=hot_bytes,
            last_migration_at=self._last_migration_at,
            total_bytes_migrated=self._total_bytes_migrated,
            migrations_run=self._migrations_run,
            total_searches=self._total_searches,
            average_search_time_ms=self._search_time_ms / self._total_searches if self._total_searches else 0.0,
            two_phase=self.two_phase.get_stats(),
            partition_store=self.store.get_stats(),
        )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def snapshot(self) -> Dict[str, Any]:
        """JSON-serializable copy of the tier index and centroid table."""
        await self.initialize()
        return {
            "version": SNAPSHOT_VERSION,
            "created_at": now_ms(),
            "tier_index": [e.to_dict() for e in await self.index.all_entries()],
            "centroids": [c.to_dict() for c in self.clusters.get_centroids()],
        }

    async def restore(self, snapshot: Mapping[str, Any]) -> None:
        """Replace the tier index and centroid table with a snapshot's contents."""
        if snapshot.get("version") != SNAPSHOT_VERSION:
            raise ValidationError("snapshot.version", f"expected {SNAPSHOT_VERSION}", value=snapshot.get("version"))
        await self.initialize()
        centroids = [Centroid.from_dict(c) for c in snapshot.get("centroids", [])]
        entries = [TierEntry.from_dict(e) for e in snapshot.get("tier_index", [])]
        self.clusters.set_centroids(centroids)
        self._flush_centroids()
        self._refresh_routing()
        await self.index.replace_all(entries)
        logger.info(f"Lakehouse restored: {len(entries)} tier entries, {len(centroids)} centroids")


__all__ = [
    "MigrationErrorEntry",
    "MigrationResult",
    "LakehouseSearchMetadata",
    "LakehouseSearchResponse",
    "LakehouseStats",
    "PartitionJournal",
    "Lakehouse",
]
