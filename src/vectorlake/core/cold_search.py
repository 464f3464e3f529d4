"""
Cold Vector Search
==================
Cluster-routed search over full-precision partitions in the blob store.

Flow:
    query -> identify_relevant_clusters (centroid similarity over the
    ClusterIndex) -> concurrent fetch_partition calls -> per-partition
    scoring -> merge_search_results (dedup by id, best score wins).

An optional ``row_filter`` narrows each decoded partition to the rows its
owner still places there, so superseded copies are never scored.

Missing partitions never abort a search. They are reported through
SearchMetadata.missing_partitions so the caller can decide whether a partial
answer is acceptable.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set

import numpy as np
from loguru import logger

from vectorlake.core._utils import run_in_thread
from vectorlake.core.cluster_manager import ClusterIndex
from vectorlake.core.config import SearchConfig
from vectorlake.core.vector_math import VectorLike, as_vector, cosine_scores
from vectorlake.storage.columnar_codec import ColumnarCodec, VectorEntry
from vectorlake.storage.partition_store import PartitionMetadata, PartitionStore


@dataclass
class SearchResult:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    tier: Optional[str] = None
    cluster_id: Optional[str] = None


@dataclass
class RelevantCluster:
    cluster_id: str
    similarity: float
    partition_key: str


@dataclass
class PartitionData:
    vectors: List[VectorEntry]
    metadata: PartitionMetadata


@dataclass
class SearchMetadata:
    clusters_searched: List[str] = field(default_factory=list)
    total_vectors_scanned: int = 0
    search_time_ms: float = 0.0
    missing_partitions: List[str] = field(default_factory=list)
    failed_partitions: List[str] = field(default_factory=list)


@dataclass
class SearchResponse:
    results: List[SearchResult]
    metadata: SearchMetadata


# =============================================================================
# Stateless building blocks
# =============================================================================

def identify_relevant_clusters(
    query: VectorLike,
    cluster_index: Optional[ClusterIndex],
    max_clusters: int,
    similarity_threshold: Optional[float] = None,
) -> List[RelevantCluster]:
    """
    Rank clusters by cosine similarity of their centroid to ``query``.

    Clusters below ``similarity_threshold`` are dropped; at most
    ``max_clusters`` survive. An empty index yields an empty list.
    """
    if cluster_index is None or not cluster_index.clusters or max_clusters <= 0:
        return []

    q = as_vector(query)
    candidates = [c for c in cluster_index.clusters if len(c.centroid) == q.shape[0]]
    if len(candidates) < len(cluster_index.clusters):
        logger.debug(
            f"Skipped {len(cluster_index.clusters) - len(candidates)} clusters with centroid "
            f"dimension != {q.shape[0]}"
        )
    if not candidates:
        return []

    sims = cosine_scores(q, np.vstack([np.asarray(c.centroid, dtype=np.float64) for c in candidates]))
    order = np.argsort(-sims, kind="stable")
    relevant: List[RelevantCluster] = []
    for idx in order:
        sim = float(sims[idx])
        if similarity_threshold is not None and sim < similarity_threshold:
            continue
        cluster = candidates[int(idx)]
        relevant.append(RelevantCluster(cluster.cluster_id, sim, cluster.partition_key))
        if len(relevant) >= max_clusters:
            break
    return relevant


async def fetch_partition(
    store: PartitionStore,
    key: str,
    codec: ColumnarCodec,
) -> Optional[PartitionData]:
    """
    Download and decode one partition; None when the key does not exist.

    Store and decode errors propagate.
    """
    data = await store.get(key)
    if data is None:
        return None

    head = await store.head(key)
    vectors = await run_in_thread(codec.decode_partition, data)
    if head is None:
        # Object vanished between get and head; describe it from the payload
        footer = codec.get_metadata(data)
        head = PartitionMetadata(
            cluster_id=footer.key_value_metadata.get("partition.cluster_id", ""),
            vector_count=footer.row_count,
            dimensionality=int(footer.key_value_metadata.get("partition.dimensionality", 0)),
            compression_type=footer.compression,
            size_bytes=len(data),
        )
    return PartitionData(vectors=vectors, metadata=head)


def _matches(entry: VectorEntry, namespace: Optional[str], type: Optional[str]) -> bool:
    if namespace is not None and entry.metadata.get("ns") != namespace:
        return False
    if type is not None and entry.metadata.get("type") != type:
        return False
    return True


def search_within_partition(
    query: VectorLike,
    vectors: Sequence[VectorEntry],
    limit: int,
    namespace: Optional[str] = None,
    type: Optional[str] = None,
) -> List[SearchResult]:
    """Score every (filtered) vector by cosine similarity; top ``limit``, best first."""
    if limit <= 0 or not vectors:
        return []
    q = as_vector(query)
    candidates = [
        v for v in vectors
        if _matches(v, namespace, type) and len(v.embedding) == q.shape[0]
    ]
    if not candidates:
        return []

    scores = cosine_scores(q, np.vstack([np.asarray(v.embedding, dtype=np.float64) for v in candidates]))
    order = np.argsort(-scores, kind="stable")[:limit]
    return [
        SearchResult(id=candidates[i].id, score=float(scores[i]), metadata=dict(candidates[i].metadata))
        for i in order
    ]


def merge_search_results(result_lists: Iterable[Sequence[SearchResult]], limit: int) -> List[SearchResult]:
    """Flatten, keep the higher-scoring copy of each id, sort descending, truncate."""
    best: Dict[str, SearchResult] = {}
    for results in result_lists:
        for r in results:
            current = best.get(r.id)
            if current is None or r.score > current.score:
                best[r.id] = r
    merged = sorted(best.values(), key=lambda r: r.score, reverse=True)
    return merged[:max(0, limit)]


def combine_tiered_results(
    hot_results: Sequence[SearchResult],
    cold_results: Sequence[SearchResult],
    limit: int,
    prefer_cold_similarity: bool = True,
) -> List[SearchResult]:
    """
    Merge approximate hot results with precise cold ones.

    Each result is tagged with its tier. For an id present in both, the cold
    copy wins when ``prefer_cold_similarity`` is set, otherwise the higher
    score wins.
    """
    combined: Dict[str, SearchResult] = {}
    for r in hot_results:
        tagged = SearchResult(r.id, r.score, r.metadata, "hot", r.cluster_id)
        current = combined.get(r.id)
        if current is None or tagged.score > current.score:
            combined[r.id] = tagged
    for r in cold_results:
        tagged = SearchResult(r.id, r.score, r.metadata, "cold", r.cluster_id)
        current = combined.get(r.id)
        if current is None:
            combined[r.id] = tagged
        elif current.tier == "hot" and prefer_cold_similarity:
            combined[r.id] = tagged
        elif tagged.score > current.score:
            combined[r.id] = tagged
    ordered = sorted(combined.values(), key=lambda r: r.score, reverse=True)
    return ordered[:max(0, limit)]


# =============================================================================
# Engine
# =============================================================================

# (partition_key, row ids) -> ids that are live in that partition
RowFilter = Callable[[str, List[str]], Awaitable[Set[str]]]


class ColdVectorSearch:
    """Cluster-routed search over one set of partitions (warm or archive)."""

    def __init__(
        self,
        store: PartitionStore,
        cluster_index: Optional[ClusterIndex] = None,
        codec: Optional[ColumnarCodec] = None,
        config: Optional[SearchConfig] = None,
        row_filter: Optional[RowFilter] = None,
    ):
        self.store = store
        self.cluster_index = cluster_index or ClusterIndex.empty()
        self.codec = codec or ColumnarCodec()
        self.config = config or SearchConfig()
        self.row_filter = row_filter

    def update_cluster_index(self, cluster_index: ClusterIndex) -> None:
        self.cluster_index = cluster_index
        logger.debug(f"Cold search routing updated: {cluster_index.cluster_count} clusters")

    async def search(self, query: VectorLike, **kwargs) -> List[SearchResult]:
        response = await self.search_with_metadata(query, **kwargs)
        return response.results

    async def search_with_metadata(
        self,
        query: VectorLike,
        limit: Optional[int] = None,
        max_clusters: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        namespace: Optional[str] = None,
        type: Optional[str] = None,
    ) -> SearchResponse:
        start = time.perf_counter()
        limit = self.config.default_limit if limit is None else limit
        max_clusters = self.config.max_clusters if max_clusters is None else max_clusters
        if similarity_threshold is None:
            similarity_threshold = self.config.cluster_similarity_threshold

        metadata = SearchMetadata()
        clusters = identify_relevant_clusters(query, self.cluster_index, max_clusters, similarity_threshold)
        metadata.clusters_searched = [c.cluster_id for c in clusters]
        if not clusters or limit <= 0:
            metadata.search_time_ms = (time.perf_counter() - start) * 1000
            return SearchResponse(results=[], metadata=metadata)

        fetched = await asyncio.gather(
            *(fetch_partition(self.store, c.partition_key, self.codec) for c in clusters),
            return_exceptions=True,
        )

        per_partition: List[List[SearchResult]] = []
        for cluster, outcome in zip(clusters, fetched):
            key = cluster.partition_key
            if isinstance(outcome, BaseException):
                logger.warning(f"Partition {key} unavailable: {outcome}")
                metadata.failed_partitions.append(key)
                metadata.missing_partitions.append(key)
                continue
            if outcome is None:
                logger.warning(f"Partition {key} missing for cluster {cluster.cluster_id}")
                metadata.missing_partitions.append(key)
                continue

            metadata.total_vectors_scanned += len(outcome.vectors)
            vectors = outcome.vectors
            if self.row_filter is not None and vectors:
                live = await self.row_filter(key, [v.id for v in vectors])
                vectors = [v for v in vectors if v.id in live]
            results = search_within_partition(query, vectors, limit, namespace, type)
            for r in results:
                r.cluster_id = cluster.cluster_id
            per_partition.append(results)

        metadata.search_time_ms = (time.perf_counter() - start) * 1000
        return SearchResponse(results=merge_search_results(per_partition, limit), metadata=metadata)


__all__ = [
    "SearchResult",
    "RelevantCluster",
    "PartitionData",
    "SearchMetadata",
    "SearchResponse",
    "identify_relevant_clusters",
    "fetch_partition",
    "search_within_partition",
    "merge_search_results",
    "combine_tiered_results",
    "RowFilter",
    "ColdVectorSearch",
]
