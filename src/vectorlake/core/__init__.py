"""
VectorLake Core
===============

Modules:
    vector_math: Distance functions and Matryoshka truncation
    cluster_manager: Centroid table, assignment, ClusterIndex snapshots
    tier_index: Durable item -> tier/location table with access accounting
    cold_search: Cluster-routed search over blob-store partitions
    two_phase_search: Hot-tier candidate generation + full-precision rerank
    migration_policy: Hot -> warm -> cold decisions and batch selection
    lakehouse: Coordinator composing all of the above
    migration_worker: Scheduled background migrations
"""

from .exceptions import (
    VectorLakeError,
    DimensionMismatchError,
    NoCentroidsError,
    ValidationError,
    NotFoundError,
    BatchMigrationError,
    StoreUnavailableError,
    ConfigurationError,
    DataCorruptionError,
    WorkflowTimeoutError,
)
from .config import VectorLakeConfig, get_config, load_config, reset_config
from .cluster_manager import (
    Centroid,
    ClusterAssignment,
    ClusterIndex,
    ClusterManager,
    DistanceMetric,
)
from .tier_index import TierEntry, TierIndex, TierStatistics, TierUpdate
from .cold_search import ColdVectorSearch, SearchResult
from .two_phase_search import TwoPhaseSearch
from .migration_policy import MigrationPolicyEngine
from .lakehouse import Lakehouse, MigrationResult
from .migration_worker import MigrationWorker

__all__ = [
    "VectorLakeError",
    "DimensionMismatchError",
    "NoCentroidsError",
    "ValidationError",
    "NotFoundError",
    "BatchMigrationError",
    "StoreUnavailableError",
    "ConfigurationError",
    "DataCorruptionError",
    "WorkflowTimeoutError",
    "VectorLakeConfig",
    "get_config",
    "load_config",
    "reset_config",
    "Centroid",
    "ClusterAssignment",
    "ClusterIndex",
    "ClusterManager",
    "DistanceMetric",
    "TierEntry",
    "TierIndex",
    "TierStatistics",
    "TierUpdate",
    "ColdVectorSearch",
    "SearchResult",
    "TwoPhaseSearch",
    "MigrationPolicyEngine",
    "Lakehouse",
    "MigrationResult",
    "MigrationWorker",
]
