import sys
from pathlib import Path

import pytest
import pytest_asyncio


# Ensure local src/ package imports work without editable install.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """
    Configure custom pytest markers.

    This function is called by pytest at startup to register custom markers.
    """
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (filesystem-backed shard, end-to-end flows)"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow-running (use pytest -m 'not slow' to skip)"
    )


def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to handle markers automatically.

    - Skip integration tests unless --run-integration flag is passed
    - Skip slow tests unless --run-slow flag is passed
    """
    run_integration = config.getoption("--run-integration", default=False)
    run_slow = config.getoption("--run-slow", default=False)

    skip_integration = pytest.mark.skip(
        reason="Integration test skipped. Use --run-integration to run."
    )
    skip_slow = pytest.mark.skip(
        reason="Slow test skipped. Use --run-slow to run."
    )

    for item in items:
        if "integration" in item.keywords and not run_integration:
            item.add_marker(skip_integration)

        if "slow" in item.keywords and not run_slow:
            item.add_marker(skip_slow)


def pytest_addoption(parser):
    """Add custom command-line options for pytest."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests"
    )
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests"
    )


# =============================================================================
# Infrastructure Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def clean_config():
    """Reset config state between tests."""
    from vectorlake.core.config import reset_config
    reset_config()
    yield
    reset_config()


@pytest.fixture
def substrate():
    """In-memory SQLite substrate shared by tier index, centroid and hot stores."""
    from vectorlake.storage.sql_substrate import SqliteSubstrate

    db = SqliteSubstrate(":memory:")
    yield db
    db.close()


@pytest.fixture
def blob_backend():
    """FlakyBlobBackend that never fails unless a test arms it."""
    from tests.mocks import FlakyBlobBackend

    return FlakyBlobBackend()


@pytest.fixture
def partition_store(blob_backend):
    """PartitionStore with instant retries so failure tests stay fast."""
    from vectorlake.core.config import PartitionStoreConfig
    from vectorlake.storage.partition_store import PartitionStore

    return PartitionStore(
        backend=blob_backend,
        config=PartitionStoreConfig(max_retries=2, retry_delay_ms=0, retry_backoff_multiplier=1.0),
    )


@pytest.fixture
def small_config():
    """Lakehouse config sized for tests: 128-dim full vectors, 64-dim hot copies, batches of one."""
    from vectorlake.core.config import (
        BatchSizeConfig,
        ClusterConfig,
        CodecConfig,
        HotToWarmConfig,
        MigrationConfig,
        SearchConfig,
        VectorLakeConfig,
        WarmToColdConfig,
    )

    return VectorLakeConfig(
        cluster=ClusterConfig(num_clusters=2, dimension=128),
        migration=MigrationConfig(
            hot_to_warm=HotToWarmConfig(max_age_ms=60_000, min_access_count=3),
            warm_to_cold=WarmToColdConfig(max_age_ms=600_000, min_partition_size=0),
            batch_size=BatchSizeConfig(min=1, max=100, target_bytes=10 * 1024 * 1024),
            interval_ms=50,
        ),
        search=SearchConfig(
            hot_dimension=64,
            full_dimension=128,
            candidate_pool_size=10,
            cluster_similarity_threshold=0.0,
            max_clusters=2,
        ),
        codec=CodecConfig(compression="zstd", compression_level=3),
    )


@pytest_asyncio.fixture
async def lakehouse(small_config, substrate, partition_store):
    """Initialized Lakehouse over in-memory SQLite and the flaky blob backend."""
    from vectorlake.core.lakehouse import Lakehouse

    lh = Lakehouse(config=small_config, substrate=substrate, partition_store=partition_store)
    await lh.initialize()
    yield lh
    await lh.close()
