"""
VectorLake - Tiered Vector Storage with Cluster-Routed Search
=============================================================

Stores embedding vectors across hot, warm and cold tiers and answers
nearest-neighbor queries by routing them to a few relevant partitions.

Key Features:
    - Centroid-based partitioning of vector space (cluster manager)
    - Durable tier index with access accounting and migration eligibility
    - Two-phase search: 256-dim Matryoshka scan, full-precision rerank
    - Parquet partitions in a pluggable blob store, one per cluster
    - Policy-driven hot -> warm -> cold migration with emergency eviction

Main Packages:
    - core: Vector math, clustering, tier index, search, migration, lakehouse
    - storage: SQLite substrate, blob/partition store, columnar codec

Quick Start:
    from vectorlake import Lakehouse

    lake = Lakehouse()
    await lake.set_centroids(centroids)
    await lake.vectorize("doc-1", embedding, {"ns": "default"})
    results = await lake.search(query_embedding, top_k=5)

Version: 0.1.0
"""

__version__ = "0.1.0"

from vectorlake.core.lakehouse import Lakehouse, MigrationResult
from vectorlake.core.cluster_manager import Centroid, ClusterManager
from vectorlake.core.config import VectorLakeConfig, load_config

__all__ = [
    "__version__",
    "Lakehouse",
    "MigrationResult",
    "Centroid",
    "ClusterManager",
    "VectorLakeConfig",
    "load_config",
]
