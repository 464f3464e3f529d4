"""
Cluster Manager
===============
Partitions vector space into named clusters via nearest-centroid assignment.

Centroids are seeded externally (e.g. an offline k-means run) and then
maintained here: per-cluster counts, incremental running-mean updates, batch
re-centering from member vectors, and JSON / packed-binary snapshots.

Routing:
    The search engine does not talk to this class directly; it consumes the
    ClusterIndex snapshot produced by build_cluster_index(), which carries one
    partition key per cluster.

Tie-breaking:
    Centroids are held in natural id order (cluster-2 before cluster-10) and
    every assignment takes the first minimum in that order, so equidistant
    queries always resolve to the smallest id regardless of insertion history.
"""

import json
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from vectorlake.core._utils import natural_sort_key, now_ms
from vectorlake.core.config import ClusterConfig, validate_cluster_config
from vectorlake.core.exceptions import (
    CentroidNotFoundError,
    DataCorruptionError,
    DimensionMismatchError,
    NoCentroidsError,
    ValidationError,
)
from vectorlake.core.vector_math import VectorLike, as_vector

# Binary snapshot layout (little-endian):
#   header: num_clusters u32 | dimension u32 | magic 4s | version u32
#   per centroid: id_len u16 | id utf-8 | float32 * dim | vector_count u32 | created_at f64 | updated_at f64
CENTROID_FORMAT_MAGIC = b"VLCT"
CENTROID_FORMAT_VERSION = 1
_HEADER = struct.Struct("<II4sI")
_TRAILER = struct.Struct("<Idd")

# Cosine distance assigned when either side has zero magnitude
ZERO_VECTOR_COSINE_DISTANCE = 2.0

# Rows per chunk when assigning batches (bounds the n x k x d temporary)
_BATCH_CHUNK = 256


class DistanceMetric(Enum):
    """Supported assignment metrics. Lower distance is always closer."""
    EUCLIDEAN = "euclidean"
    COSINE = "cosine"
    DOT_PRODUCT = "dotProduct"


@dataclass
class Centroid:
    """Representative vector for one cluster."""
    id: str
    vector: List[float]
    dimension: int
    vector_count: int = 0
    created_at: float = field(default_factory=now_ms)
    updated_at: float = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vector": [float(x) for x in self.vector],
            "dimension": self.dimension,
            "vector_count": self.vector_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Centroid":
        vector = [float(x) for x in data["vector"]]
        return cls(
            id=str(data["id"]),
            vector=vector,
            dimension=int(data.get("dimension", len(vector))),
            vector_count=int(data.get("vector_count", 0)),
            created_at=data.get("created_at", now_ms()),
            updated_at=data.get("updated_at", now_ms()),
        )


@dataclass
class ClusterAssignment:
    vector_id: str
    cluster_id: str
    distance: float
    assigned_at: int


@dataclass
class ClusterStats:
    """Derived per-cluster statistics; never persisted."""
    cluster_id: str
    vector_count: int
    average_distance: float
    min_distance: float
    max_distance: float
    last_updated: float


@dataclass
class NearestCluster:
    cluster_id: str
    distance: float
    similarity: float
    partition_key: str


@dataclass
class ClusterInfo:
    """One routing entry of a ClusterIndex."""
    cluster_id: str
    centroid: np.ndarray
    vector_count: int
    partition_key: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "centroid": [float(x) for x in self.centroid],
            "vector_count": self.vector_count,
            "partition_key": self.partition_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterInfo":
        return cls(
            cluster_id=str(data["cluster_id"]),
            centroid=np.asarray(data["centroid"], dtype=np.float32),
            vector_count=int(data.get("vector_count", 0)),
            partition_key=str(data["partition_key"]),
        )


@dataclass
class ClusterIndex:
    """Serializable routing snapshot consumed by the cold search engine."""
    version: int
    cluster_count: int
    total_vectors: int
    clusters: List[ClusterInfo]
    created_at: int
    updated_at: int

    @classmethod
    def empty(cls) -> "ClusterIndex":
        ts = now_ms()
        return cls(version=1, cluster_count=0, total_vectors=0, clusters=[], created_at=ts, updated_at=ts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "cluster_count": self.cluster_count,
            "total_vectors": self.total_vectors,
            "clusters": [c.to_dict() for c in self.clusters],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterIndex":
        clusters = [ClusterInfo.from_dict(c) for c in data.get("clusters", [])]
        return cls(
            version=int(data.get("version", 1)),
            cluster_count=int(data.get("cluster_count", len(clusters))),
            total_vectors=int(data.get("total_vectors", sum(c.vector_count for c in clusters))),
            clusters=clusters,
            created_at=int(data.get("created_at", now_ms())),
            updated_at=int(data.get("updated_at", now_ms())),
        )


@dataclass
class _DistanceAccumulator:
    count: int = 0
    total: float = 0.0
    minimum: float = float("inf")
    maximum: float = float("-inf")

    def add(self, distance: float) -> None:
        self.count += 1
        self.total += distance
        self.minimum = min(self.minimum, distance)
        self.maximum = max(self.maximum, distance)


class ClusterManager:
    """
    Owns the centroid table and assigns vectors to their nearest cluster.

    All methods are synchronous and pure in-memory; durability is provided by
    vectorlake.storage.centroid_store, driven by the Lakehouse coordinator.
    """

    def __init__(self, config: Optional[ClusterConfig] = None):
        self.config = validate_cluster_config(config or ClusterConfig())
        self.metric = DistanceMetric(self.config.distance_metric)
        self._centroids: Dict[str, Centroid] = {}
        self._order: List[str] = []
        self._matrix: Optional[np.ndarray] = None
        self._distance_stats: Dict[str, _DistanceAccumulator] = {}

    # ------------------------------------------------------------------
    # Centroid storage
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> int:
        return self.config.dimension

    def __len__(self) -> int:
        return len(self._centroids)

    def has_centroids(self) -> bool:
        return bool(self._centroids)

    def set_centroids(self, centroids: Iterable[Centroid]) -> None:
        """Replace the centroid table wholesale."""
        incoming = list(centroids)
        seen = set()
        for centroid in incoming:
            if len(centroid.vector) != self.dimension or centroid.dimension != self.dimension:
                raise DimensionMismatchError(
                    expected=self.dimension,
                    actual=len(centroid.vector) if len(centroid.vector) != self.dimension else centroid.dimension,
                    operation="set_centroids",
                    context={"centroid_id": centroid.id},
                )
            if centroid.id in seen:
                raise ValidationError("centroids", f"duplicate centroid id '{centroid.id}'")
            seen.add(centroid.id)

        if incoming and len(incoming) != self.config.num_clusters:
            logger.warning(
                f"Centroid table has {len(incoming)} clusters, configured num_clusters={self.config.num_clusters}"
            )

        self._centroids = {
            c.id: Centroid(
                id=c.id,
                vector=[float(x) for x in c.vector],
                dimension=c.dimension,
                vector_count=max(0, int(c.vector_count)),
                created_at=c.created_at,
                updated_at=c.updated_at,
            )
            for c in incoming
        }
        self._order = sorted(self._centroids, key=natural_sort_key)
        self._matrix = None
        self._distance_stats = {}
        logger.info(f"Centroid table replaced: {len(self._centroids)} clusters (dim={self.dimension})")

    def get_centroids(self) -> List[Centroid]:
        return [self._centroids[cid] for cid in self._order]

    def get_centroid(self, cluster_id: str) -> Optional[Centroid]:
        return self._centroids.get(cluster_id)

    def _require(self, cluster_id: str) -> Centroid:
        centroid = self._centroids.get(cluster_id)
        if centroid is None:
            raise CentroidNotFoundError(cluster_id)
        return centroid

    @staticmethod
    def _next_updated_at(previous: float) -> float:
        now = now_ms()
        return now if now > previous else previous + 1

    def update_centroid(
        self,
        cluster_id: str,
        vector: Optional[VectorLike] = None,
        vector_count: Optional[int] = None,
    ) -> Centroid:
        """Update a centroid's vector and/or count; ``updated_at`` strictly increases."""
        centroid = self._require(cluster_id)
        if vector is not None:
            v = as_vector(vector)
            if v.shape[0] != self.dimension:
                raise DimensionMismatchError(self.dimension, v.shape[0], "update_centroid")
            centroid.vector = v.tolist()
            self._matrix = None
        if vector_count is not None:
            centroid.vector_count = max(0, int(vector_count))
        centroid.updated_at = self._next_updated_at(centroid.updated_at)
        return centroid

    def recompute_centroid(self, cluster_id: str, member_vectors: Sequence[VectorLike]) -> Centroid:
        """
        Re-center a cluster on the arithmetic mean of its members.

        An empty member list keeps the vector but resets the count to 0.
        """
        centroid = self._require(cluster_id)
        if len(member_vectors) == 0:
            centroid.vector_count = 0
            centroid.updated_at = self._next_updated_at(centroid.updated_at)
            return centroid

        members = np.asarray(member_vectors, dtype=np.float64)
        if members.ndim != 2 or members.shape[1] != self.dimension:
            actual = members.shape[1] if members.ndim == 2 else members.size
            raise DimensionMismatchError(self.dimension, actual, "recompute_centroid")

        centroid.vector = members.mean(axis=0).tolist()
        centroid.vector_count = members.shape[0]
        centroid.updated_at = self._next_updated_at(centroid.updated_at)
        self._matrix = None
        return centroid

    def increment_cluster_count(self, cluster_id: str, delta: int = 1) -> Centroid:
        """Adjust a cluster's vector count, clamped at zero."""
        centroid = self._require(cluster_id)
        centroid.vector_count = max(0, centroid.vector_count + int(delta))
        centroid.updated_at = self._next_updated_at(centroid.updated_at)
        return centroid

    # ------------------------------------------------------------------
    # Distance computation
    # ------------------------------------------------------------------

    def _centroid_matrix(self) -> np.ndarray:
        if self._matrix is None:
            self._matrix = np.asarray(
                [self._centroids[cid].vector for cid in self._order], dtype=np.float64
            ).reshape(len(self._order), self.dimension)
        return self._matrix

    def _check_query(self, vector: VectorLike, operation: str) -> np.ndarray:
        if not self._centroids:
            raise NoCentroidsError(operation)
        v = as_vector(vector)
        if v.shape[0] != self.dimension:
            raise DimensionMismatchError(self.dimension, v.shape[0], operation)
        return v

    def _distances(self, queries: np.ndarray) -> np.ndarray:
        """Distances of each query row to every centroid, shape (n, k)."""
        centroids = self._centroid_matrix()
        if self.metric is DistanceMetric.EUCLIDEAN:
            diff = queries[:, None, :] - centroids[None, :, :]
            return np.sqrt(np.einsum("nkd,nkd->nk", diff, diff))

        dots = queries @ centroids.T
        if self.metric is DistanceMetric.DOT_PRODUCT:
            return -dots

        q_norms = np.linalg.norm(queries, axis=1)[:, None]
        c_norms = np.linalg.norm(centroids, axis=1)[None, :]
        denom = q_norms * c_norms
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(denom > 0, dots / denom, 0.0)
        return np.where(denom > 0, 1.0 - np.clip(sims, -1.0, 1.0), ZERO_VECTOR_COSINE_DISTANCE)

    def _similarity_from_distance(self, distance: float) -> float:
        if self.metric is DistanceMetric.COSINE:
            return 1.0 - distance
        if self.metric is DistanceMetric.DOT_PRODUCT:
            return -distance
        return 1.0 / (1.0 + distance)

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign_vector(self, vector_id: str, vector: VectorLike) -> ClusterAssignment:
        """Assign a vector to its nearest centroid (smallest id wins exact ties)."""
        v = self._check_query(vector, "assign_vector")
        distances = self._distances(v[None, :])[0]
        best = int(np.argmin(distances))
        return ClusterAssignment(
            vector_id=vector_id,
            cluster_id=self._order[best],
            distance=float(distances[best]),
            assigned_at=now_ms(),
        )

    def assign_vector_batch(self, vectors: Sequence[Tuple[str, VectorLike]]) -> List[ClusterAssignment]:
        """Assign many vectors; cost is linear in vectors x clusters."""
        if len(vectors) == 0:
            return []
        if not self._centroids:
            raise NoCentroidsError("assign_vector_batch")

        ids = [vid for vid, _ in vectors]
        rows = []
        for vid, vec in vectors:
            v = as_vector(vec)
            if v.shape[0] != self.dimension:
                raise DimensionMismatchError(
                    self.dimension, v.shape[0], "assign_vector_batch", context={"vector_id": vid}
                )
            rows.append(v)
        matrix = np.vstack(rows)

        assignments: List[ClusterAssignment] = []
        ts = now_ms()
        for start in range(0, matrix.shape[0], _BATCH_CHUNK):
            chunk = matrix[start:start + _BATCH_CHUNK]
            distances = self._distances(chunk)
            best = np.argmin(distances, axis=1)
            for offset, idx in enumerate(best):
                assignments.append(ClusterAssignment(
                    vector_id=ids[start + offset],
                    cluster_id=self._order[int(idx)],
                    distance=float(distances[offset, idx]),
                    assigned_at=ts,
                ))
        return assignments

    def assign_vector_incremental(self, vector_id: str, vector: VectorLike) -> ClusterAssignment:
        """
        Assign and count the vector in its cluster.

        With incremental_centroid_update enabled the centroid moves to the
        running mean (old * (n - 1) + v) / n, where n is the new count.
        """
        assignment = self.assign_vector(vector_id, vector)
        centroid = self.increment_cluster_count(assignment.cluster_id, 1)
        self._distance_stats.setdefault(assignment.cluster_id, _DistanceAccumulator()).add(assignment.distance)

        if self.config.incremental_centroid_update:
            n = centroid.vector_count
            old = np.asarray(centroid.vector, dtype=np.float64)
            centroid.vector = ((old * (n - 1) + as_vector(vector)) / n).tolist()
            self._matrix = None
            logger.debug(f"Centroid {centroid.id} moved toward {vector_id} (n={n})")

        return assignment

    def reassign_vector(self, vector_id: str, vector: VectorLike, previous_cluster_id: str) -> ClusterAssignment:
        """Re-route an updated vector; counts move only if the cluster changed."""
        self._require(previous_cluster_id)
        assignment = self.assign_vector(vector_id, vector)
        if assignment.cluster_id != previous_cluster_id:
            self.increment_cluster_count(previous_cluster_id, -1)
            self.increment_cluster_count(assignment.cluster_id, 1)
        return assignment

    # ------------------------------------------------------------------
    # Query routing
    # ------------------------------------------------------------------

    def find_nearest_clusters(
        self,
        query: VectorLike,
        k: int,
        max_distance: Optional[float] = None,
        prefix: Optional[str] = None,
        min_similarity: Optional[float] = None,
    ) -> List[NearestCluster]:
        """
        Up to ``k`` clusters, best first.

        ``max_distance`` and ``min_similarity`` cut the ranking off at the
        first cluster beyond either bound. Similarity falls as distance grows
        under every metric, so both cut-offs agree with the ranking.
        """
        v = self._check_query(query, "find_nearest_clusters")
        if k <= 0:
            return []
        distances = self._distances(v[None, :])[0]
        # Stable sort keeps natural id order on ties
        ranked = np.argsort(distances, kind="stable")
        results: List[NearestCluster] = []
        for idx in ranked:
            d = float(distances[idx])
            if max_distance is not None and d > max_distance:
                break
            similarity = self._similarity_from_distance(d)
            if min_similarity is not None and similarity < min_similarity:
                break
            cluster_id = self._order[int(idx)]
            results.append(NearestCluster(
                cluster_id=cluster_id,
                distance=d,
                similarity=similarity,
                partition_key=self.partition_key(cluster_id, prefix),
            ))
            if len(results) >= k:
                break
        return results

    def partition_key(self, cluster_id: str, prefix: Optional[str] = None) -> str:
        base = self.config.partition_key_prefix if prefix is None else prefix
        return f"{base}{cluster_id}.{self.config.partition_extension}"

    def get_cluster_partitions(self, cluster_ids: Iterable[str], prefix: Optional[str] = None) -> List[str]:
        return [self.partition_key(cid, prefix) for cid in cluster_ids]

    def build_cluster_index(self, prefix: Optional[str] = None, version: int = 1) -> ClusterIndex:
        """Snapshot current centroids into a ClusterIndex routing table."""
        centroids = self.get_centroids()
        clusters = [
            ClusterInfo(
                cluster_id=c.id,
                centroid=np.asarray(c.vector, dtype=np.float32),
                vector_count=c.vector_count,
                partition_key=self.partition_key(c.id, prefix),
            )
            for c in centroids
        ]
        created = min((int(c.created_at) for c in centroids), default=now_ms())
        updated = max((int(c.updated_at) for c in centroids), default=created)
        return ClusterIndex(
            version=version,
            cluster_count=len(clusters),
            total_vectors=sum(c.vector_count for c in clusters),
            clusters=clusters,
            created_at=created,
            updated_at=updated,
        )

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_cluster_stats(self, cluster_id: Optional[str] = None):
        """All cluster stats in id order, or one cluster's stats (None if unknown)."""
        if cluster_id is not None:
            if cluster_id not in self._centroids:
                return None
            return self._stats_for(cluster_id)
        return [self._stats_for(cid) for cid in self._order]

    def _stats_for(self, cid: str) -> ClusterStats:
        centroid = self._centroids[cid]
        acc = self._distance_stats.get(cid)
        if acc is None or acc.count == 0:
            avg = low = high = 0.0
        else:
            avg, low, high = acc.total / acc.count, acc.minimum, acc.maximum
        return ClusterStats(
            cluster_id=cid,
            vector_count=centroid.vector_count,
            average_distance=avg,
            min_distance=low,
            max_distance=high,
            last_updated=centroid.updated_at,
        )

    def get_imbalanced_clusters(self, imbalance_threshold: float) -> List[ClusterStats]:
        """
        Return the smallest and largest non-empty clusters when their size
        ratio exceeds ``imbalance_threshold``; otherwise an empty list.
        """
        stats = self.get_cluster_stats()
        counts = [s.vector_count for s in stats if s.vector_count > 0]
        if not counts:
            return []
        low, high = min(counts), max(counts)
        if high / low > imbalance_threshold:
            return [s for s in stats if s.vector_count in (low, high)]
        return []

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def serialize_centroids(self) -> str:
        return json.dumps([c.to_dict() for c in self.get_centroids()])

    def deserialize_centroids(self, payload: str) -> None:
        try:
            raw = json.loads(payload)
        except json.JSONDecodeError as e:
            raise DataCorruptionError("centroids.json", f"Invalid centroid JSON: {e}") from e
        self.set_centroids(Centroid.from_dict(item) for item in raw)

    def serialize_centroids_binary(self) -> bytes:
        """Packed float32 snapshot; always smaller than the JSON form for dim >= 64."""
        centroids = self.get_centroids()
        parts = [_HEADER.pack(len(centroids), self.dimension, CENTROID_FORMAT_MAGIC, CENTROID_FORMAT_VERSION)]
        for c in centroids:
            id_bytes = c.id.encode("utf-8")
            parts.append(struct.pack("<H", len(id_bytes)))
            parts.append(id_bytes)
            parts.append(np.asarray(c.vector, dtype="<f4").tobytes())
            parts.append(_TRAILER.pack(c.vector_count, float(c.created_at), float(c.updated_at)))
        return b"".join(parts)

    @staticmethod
    def decode_centroids_binary(data: bytes) -> List[Centroid]:
        if len(data) < _HEADER.size:
            raise DataCorruptionError("centroids.bin", "Truncated centroid header")
        count, dimension, magic, version = _HEADER.unpack_from(data, 0)
        if magic != CENTROID_FORMAT_MAGIC:
            raise DataCorruptionError("centroids.bin", f"Invalid magic bytes {magic!r}")
        if version != CENTROID_FORMAT_VERSION:
            raise DataCorruptionError("centroids.bin", f"Unsupported centroid format version {version}")

        centroids: List[Centroid] = []
        offset = _HEADER.size
        vec_bytes = dimension * 4
        try:
            for _ in range(count):
                (id_len,) = struct.unpack_from("<H", data, offset)
                offset += 2
                cid = data[offset:offset + id_len].decode("utf-8")
                offset += id_len
                vector = np.frombuffer(data, dtype="<f4", count=dimension, offset=offset)
                offset += vec_bytes
                vector_count, created_at, updated_at = _TRAILER.unpack_from(data, offset)
                offset += _TRAILER.size
                centroids.append(Centroid(
                    id=cid,
                    vector=vector.astype(np.float64).tolist(),
                    dimension=dimension,
                    vector_count=vector_count,
                    created_at=int(created_at) if float(created_at).is_integer() else created_at,
                    updated_at=int(updated_at) if float(updated_at).is_integer() else updated_at,
                ))
        except (struct.error, ValueError, UnicodeDecodeError) as e:
            raise DataCorruptionError("centroids.bin", f"Truncated centroid record: {e}") from e
        return centroids

    def deserialize_centroids_binary(self, data: bytes) -> List[Centroid]:
        centroids = self.decode_centroids_binary(data)
        self.set_centroids(centroids)
        return self.get_centroids()


__all__ = [
    "CENTROID_FORMAT_MAGIC",
    "DistanceMetric",
    "Centroid",
    "ClusterAssignment",
    "ClusterStats",
    "NearestCluster",
    "ClusterInfo",
    "ClusterIndex",
    "ClusterManager",
]
