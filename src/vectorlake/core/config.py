"""
VectorLake Configuration System
===============================
Centralized, validated configuration with environment variable overrides.
"""

import os
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field

import yaml

from vectorlake.core.exceptions import ConfigurationError

SUPPORTED_METRICS = ("euclidean", "cosine", "dotProduct")
SUPPORTED_COMPRESSIONS = ("none", "snappy", "gzip", "zstd")
SUPPORTED_BACKENDS = ("memory", "filesystem")
MRL_DIMENSIONS = (64, 128, 256, 512, 768)


@dataclass(frozen=True)
class ClusterConfig:
    num_clusters: int = 16
    dimension: int = 256
    distance_metric: str = "euclidean"
    incremental_centroid_update: bool = False
    partition_key_prefix: str = "vectors/"
    partition_extension: str = "parquet"


@dataclass(frozen=True)
class PartitionStoreConfig:
    backend: str = "memory"
    root_dir: str = "./data/partitions"
    prefix: str = ""
    max_retries: int = 3
    retry_delay_ms: int = 100
    retry_backoff_multiplier: float = 2.0
    list_page_size: int = 1000


@dataclass(frozen=True)
class HotToWarmConfig:
    max_age_ms: int = 86_400_000
    min_access_count: int = 3
    max_hot_size_percent: float = 80.0
    access_window_ms: int = 3_600_000


@dataclass(frozen=True)
class WarmToColdConfig:
    max_age_ms: int = 604_800_000
    min_partition_size: int = 1024 * 1024
    retention_period_ms: Optional[int] = None


@dataclass(frozen=True)
class BatchSizeConfig:
    min: int = 10
    max: int = 1000
    target_bytes: int = 10 * 1024 * 1024


@dataclass(frozen=True)
class MigrationConfig:
    hot_to_warm: HotToWarmConfig = field(default_factory=HotToWarmConfig)
    warm_to_cold: WarmToColdConfig = field(default_factory=WarmToColdConfig)
    batch_size: BatchSizeConfig = field(default_factory=BatchSizeConfig)
    interval_ms: int = 3_600_000
    hot_capacity_bytes: int = 256 * 1024 * 1024
    archive_prefix: str = "archive/"
    enabled: bool = True


@dataclass(frozen=True)
class SearchConfig:
    max_clusters: int = 3
    cluster_similarity_threshold: float = 0.5
    default_limit: int = 10
    candidate_pool_size: int = 50
    hot_dimension: int = 256
    full_dimension: int = 768
    prefer_cold_similarity: bool = True


@dataclass(frozen=True)
class CodecConfig:
    compression: str = "zstd"
    compression_level: int = 3
    row_group_size: int = 1000


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str = "./data"
    database: str = "./data/vectorlake.sqlite"


@dataclass(frozen=True)
class ObservabilityConfig:
    log_level: str = "INFO"
    structured_logging: bool = False


@dataclass(frozen=True)
class VectorLakeConfig:
    """Root configuration object."""
    version: str = "1.0"
    cluster: ClusterConfig = field(
        default_factory=lambda: ClusterConfig(dimension=768)
    )
    partition_store: PartitionStoreConfig = field(default_factory=PartitionStoreConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    codec: CodecConfig = field(default_factory=CodecConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)


def _env_override(key: str, default):
    """Check for VLAKE_<KEY> environment variable override."""
    env_key = f"VLAKE_{key.upper()}"
    val = os.environ.get(env_key)
    if val is None:
        return default
    # Type coercion based on the default's type
    if isinstance(default, bool):
        return val.lower() in ("true", "1", "yes")
    if isinstance(default, int):
        return int(val)
    if isinstance(default, float):
        return float(val)
    return val


# =============================================================================
# Validation helpers (shared by load_config and runtime config updates)
# =============================================================================

def validate_cluster_config(cfg: ClusterConfig) -> ClusterConfig:
    if cfg.distance_metric not in SUPPORTED_METRICS:
        raise ConfigurationError(
            config_key="cluster.distance_metric",
            reason=f"Unknown distance metric '{cfg.distance_metric}', expected one of {SUPPORTED_METRICS}",
        )
    if cfg.dimension <= 0:
        raise ConfigurationError(
            config_key="cluster.dimension",
            reason=f"Dimension must be positive, got {cfg.dimension}",
        )
    if cfg.num_clusters <= 0:
        raise ConfigurationError(
            config_key="cluster.num_clusters",
            reason=f"Cluster count must be positive, got {cfg.num_clusters}",
        )
    return cfg


def validate_hot_to_warm(cfg: HotToWarmConfig) -> HotToWarmConfig:
    if cfg.max_age_ms <= 0:
        raise ConfigurationError(
            config_key="migration.hot_to_warm.max_age_ms",
            reason=f"maxAge must be positive, got {cfg.max_age_ms}",
        )
    if cfg.max_hot_size_percent < 0 or cfg.max_hot_size_percent > 100:
        raise ConfigurationError(
            config_key="migration.hot_to_warm.max_hot_size_percent",
            reason=f"maxHotSizePercent must be between 0 and 100, got {cfg.max_hot_size_percent}",
        )
    if cfg.min_access_count < 0:
        raise ConfigurationError(
            config_key="migration.hot_to_warm.min_access_count",
            reason=f"minAccessCount must be non-negative, got {cfg.min_access_count}",
        )
    return cfg


def validate_warm_to_cold(cfg: WarmToColdConfig) -> WarmToColdConfig:
    if cfg.max_age_ms <= 0:
        raise ConfigurationError(
            config_key="migration.warm_to_cold.max_age_ms",
            reason=f"maxAge must be positive, got {cfg.max_age_ms}",
        )
    if cfg.min_partition_size < 0:
        raise ConfigurationError(
            config_key="migration.warm_to_cold.min_partition_size",
            reason=f"minPartitionSize must be non-negative, got {cfg.min_partition_size}",
        )
    return cfg


def validate_batch_size(cfg: BatchSizeConfig) -> BatchSizeConfig:
    if cfg.min < 0 or cfg.max <= 0 or cfg.min > cfg.max:
        raise ConfigurationError(
            config_key="migration.batch_size",
            reason=f"Expected 0 <= min <= max and max > 0, got min={cfg.min} max={cfg.max}",
        )
    if cfg.target_bytes <= 0:
        raise ConfigurationError(
            config_key="migration.batch_size.target_bytes",
            reason=f"targetBytes must be positive, got {cfg.target_bytes}",
        )
    return cfg


def validate_search_config(cfg: SearchConfig) -> SearchConfig:
    if cfg.hot_dimension not in MRL_DIMENSIONS:
        raise ConfigurationError(
            config_key="search.hot_dimension",
            reason=f"Hot dimension must be one of {MRL_DIMENSIONS}, got {cfg.hot_dimension}",
        )
    if cfg.hot_dimension > cfg.full_dimension:
        raise ConfigurationError(
            config_key="search.hot_dimension",
            reason=f"Hot dimension {cfg.hot_dimension} exceeds full dimension {cfg.full_dimension}",
        )
    if cfg.max_clusters <= 0:
        raise ConfigurationError(
            config_key="search.max_clusters",
            reason=f"max_clusters must be positive, got {cfg.max_clusters}",
        )
    return cfg


def validate_codec_config(cfg: CodecConfig) -> CodecConfig:
    if cfg.compression not in SUPPORTED_COMPRESSIONS:
        raise ConfigurationError(
            config_key="codec.compression",
            reason=f"Unknown compression '{cfg.compression}', expected one of {SUPPORTED_COMPRESSIONS}",
        )
    if cfg.compression == "zstd" and not 1 <= cfg.compression_level <= 22:
        raise ConfigurationError(
            config_key="codec.compression_level",
            reason=f"zstd level must be between 1 and 22, got {cfg.compression_level}",
        )
    if cfg.row_group_size <= 0:
        raise ConfigurationError(
            config_key="codec.row_group_size",
            reason=f"row_group_size must be positive, got {cfg.row_group_size}",
        )
    return cfg


def validate_partition_store_config(cfg: PartitionStoreConfig) -> PartitionStoreConfig:
    if cfg.backend not in SUPPORTED_BACKENDS:
        raise ConfigurationError(
            config_key="partition_store.backend",
            reason=f"Unknown backend '{cfg.backend}', expected one of {SUPPORTED_BACKENDS}",
        )
    if cfg.max_retries < 0:
        raise ConfigurationError(
            config_key="partition_store.max_retries",
            reason=f"max_retries must be non-negative, got {cfg.max_retries}",
        )
    if cfg.retry_backoff_multiplier < 1.0:
        raise ConfigurationError(
            config_key="partition_store.retry_backoff_multiplier",
            reason=f"Backoff multiplier must be >= 1.0, got {cfg.retry_backoff_multiplier}",
        )
    return cfg


def load_config(path: Optional[Path] = None) -> VectorLakeConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Priority: ENV > YAML > defaults.

    Args:
        path: Path to config.yaml. If None, searches ./config.yaml and the project root.

    Returns:
        Validated VectorLakeConfig instance.

    Raises:
        ConfigurationError: If any section fails validation.
    """
    if path is None:
        candidates = [
            Path("config.yaml"),
            Path(__file__).parent.parent.parent.parent / "config.yaml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    raw = {}
    if path is not None and Path(path).exists():
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
            raw = loaded.get("vectorlake") or {}

    # Search (dimensions drive the cluster default below)
    search_raw = raw.get("search") or {}
    search = validate_search_config(SearchConfig(
        max_clusters=_env_override("SEARCH_MAX_CLUSTERS", search_raw.get("max_clusters", 3)),
        cluster_similarity_threshold=_env_override(
            "SEARCH_CLUSTER_SIMILARITY_THRESHOLD", search_raw.get("cluster_similarity_threshold", 0.5)
        ),
        default_limit=_env_override("SEARCH_DEFAULT_LIMIT", search_raw.get("default_limit", 10)),
        candidate_pool_size=_env_override("SEARCH_CANDIDATE_POOL_SIZE", search_raw.get("candidate_pool_size", 50)),
        hot_dimension=_env_override("SEARCH_HOT_DIMENSION", search_raw.get("hot_dimension", 256)),
        full_dimension=_env_override("SEARCH_FULL_DIMENSION", search_raw.get("full_dimension", 768)),
        prefer_cold_similarity=_env_override(
            "SEARCH_PREFER_COLD_SIMILARITY", search_raw.get("prefer_cold_similarity", True)
        ),
    ))

    # Cluster routing
    cluster_raw = raw.get("cluster") or {}
    cluster = validate_cluster_config(ClusterConfig(
        num_clusters=_env_override("CLUSTER_NUM_CLUSTERS", cluster_raw.get("num_clusters", 16)),
        dimension=_env_override("CLUSTER_DIMENSION", cluster_raw.get("dimension", search.full_dimension)),
        distance_metric=_env_override("CLUSTER_DISTANCE_METRIC", cluster_raw.get("distance_metric", "euclidean")),
        incremental_centroid_update=_env_override(
            "CLUSTER_INCREMENTAL_CENTROID_UPDATE", cluster_raw.get("incremental_centroid_update", False)
        ),
        partition_key_prefix=_env_override(
            "CLUSTER_PARTITION_KEY_PREFIX", cluster_raw.get("partition_key_prefix", "vectors/")
        ),
        partition_extension=cluster_raw.get("partition_extension", "parquet"),
    ))

    # Partition store
    paths_raw = raw.get("paths") or {}
    data_dir = _env_override("DATA_DIR", paths_raw.get("data_dir", "./data"))
    paths = PathsConfig(
        data_dir=data_dir,
        database=_env_override("DATABASE", paths_raw.get("database", str(Path(data_dir) / "vectorlake.sqlite"))),
    )

    store_raw = raw.get("partition_store") or {}
    partition_store = validate_partition_store_config(PartitionStoreConfig(
        backend=_env_override("PARTITION_STORE_BACKEND", store_raw.get("backend", "memory")),
        root_dir=_env_override(
            "PARTITION_STORE_ROOT_DIR", store_raw.get("root_dir", str(Path(data_dir) / "partitions"))
        ),
        prefix=_env_override("PARTITION_STORE_PREFIX", store_raw.get("prefix", "")),
        max_retries=_env_override("PARTITION_STORE_MAX_RETRIES", store_raw.get("max_retries", 3)),
        retry_delay_ms=_env_override("PARTITION_STORE_RETRY_DELAY_MS", store_raw.get("retry_delay_ms", 100)),
        retry_backoff_multiplier=_env_override(
            "PARTITION_STORE_RETRY_BACKOFF_MULTIPLIER", store_raw.get("retry_backoff_multiplier", 2.0)
        ),
        list_page_size=store_raw.get("list_page_size", 1000),
    ))

    # Migration policy
    mig_raw = raw.get("migration") or {}
    h2w_raw = mig_raw.get("hot_to_warm") or {}
    w2c_raw = mig_raw.get("warm_to_cold") or {}
    batch_raw = mig_raw.get("batch_size") or {}
    migration = MigrationConfig(
        hot_to_warm=validate_hot_to_warm(HotToWarmConfig(
            max_age_ms=_env_override("MIGRATION_HOT_MAX_AGE_MS", h2w_raw.get("max_age_ms", 86_400_000)),
            min_access_count=_env_override("MIGRATION_HOT_MIN_ACCESS_COUNT", h2w_raw.get("min_access_count", 3)),
            max_hot_size_percent=_env_override(
                "MIGRATION_HOT_MAX_SIZE_PERCENT", h2w_raw.get("max_hot_size_percent", 80.0)
            ),
            access_window_ms=h2w_raw.get("access_window_ms", 3_600_000),
        )),
        warm_to_cold=validate_warm_to_cold(WarmToColdConfig(
            max_age_ms=_env_override("MIGRATION_WARM_MAX_AGE_MS", w2c_raw.get("max_age_ms", 604_800_000)),
            min_partition_size=_env_override(
                "MIGRATION_WARM_MIN_PARTITION_SIZE", w2c_raw.get("min_partition_size", 1024 * 1024)
            ),
            retention_period_ms=w2c_raw.get("retention_period_ms"),
        )),
        batch_size=validate_batch_size(BatchSizeConfig(
            min=batch_raw.get("min", 10),
            max=batch_raw.get("max", 1000),
            target_bytes=batch_raw.get("target_bytes", 10 * 1024 * 1024),
        )),
        interval_ms=_env_override("MIGRATION_INTERVAL_MS", mig_raw.get("interval_ms", 3_600_000)),
        hot_capacity_bytes=_env_override(
            "MIGRATION_HOT_CAPACITY_BYTES", mig_raw.get("hot_capacity_bytes", 256 * 1024 * 1024)
        ),
        archive_prefix=mig_raw.get("archive_prefix", "archive/"),
        enabled=_env_override("MIGRATION_ENABLED", mig_raw.get("enabled", True)),
    )
    if migration.interval_ms <= 0:
        raise ConfigurationError(
            config_key="migration.interval_ms",
            reason=f"Migration interval must be positive, got {migration.interval_ms}",
        )

    codec_raw = raw.get("codec") or {}
    codec = validate_codec_config(CodecConfig(
        compression=_env_override("CODEC_COMPRESSION", codec_raw.get("compression", "zstd")),
        compression_level=_env_override("CODEC_COMPRESSION_LEVEL", codec_raw.get("compression_level", 3)),
        row_group_size=codec_raw.get("row_group_size", 1000),
    ))

    obs_raw = raw.get("observability") or {}
    observability = ObservabilityConfig(
        log_level=_env_override("LOG_LEVEL", obs_raw.get("log_level", "INFO")),
        structured_logging=_env_override("STRUCTURED_LOGGING", obs_raw.get("structured_logging", False)),
    )

    return VectorLakeConfig(
        version=raw.get("version", "1.0"),
        cluster=cluster,
        partition_store=partition_store,
        migration=migration,
        search=search,
        codec=codec,
        paths=paths,
        observability=observability,
    )


# Module-level singleton (lazy-loaded)
_CONFIG: Optional[VectorLakeConfig] = None


def get_config() -> VectorLakeConfig:
    """Get or initialize the module-level config."""
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG


def reset_config():
    """Reset the module-level config (useful for testing)."""
    global _CONFIG
    _CONFIG = None
