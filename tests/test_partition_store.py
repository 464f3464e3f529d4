"""
Tests for the partition store adapter
=====================================
Retry/backoff behaviour, not-found semantics, range reads, pagination and the
filesystem backend.
"""

from unittest.mock import AsyncMock, patch

import pytest

from vectorlake.core.config import PartitionStoreConfig
from vectorlake.core.exceptions import DataCorruptionError, StoreUnavailableError, ValidationError
from vectorlake.storage.partition_store import (
    FileSystemBlobBackend,
    InMemoryBlobBackend,
    PartitionMetadata,
    PartitionStore,
    create_backend,
)


class TestBasicOperations:

    @pytest.mark.asyncio
    async def test_put_get_head(self, partition_store):
        meta = PartitionMetadata(cluster_id="cluster-1", vector_count=3, dimensionality=768, compression_type="zstd")
        size = await partition_store.put("vectors/cluster-1.parquet", b"payload", meta)
        assert size == 7
        assert await partition_store.get("vectors/cluster-1.parquet") == b"payload"

        head = await partition_store.head("vectors/cluster-1.parquet")
        assert head.cluster_id == "cluster-1"
        assert head.vector_count == 3
        assert head.dimensionality == 768
        assert head.compression_type == "zstd"
        assert head.size_bytes == 7
        assert head.created_at == meta.created_at

    @pytest.mark.asyncio
    async def test_missing_returns_none_without_retry(self, partition_store, blob_backend):
        assert await partition_store.get("nope") is None
        assert await partition_store.head("nope") is None
        assert await partition_store.exists("nope") is False
        assert len(blob_backend.calls("get")) == 1
        assert partition_store.get_stats()["retries"] == 0

    @pytest.mark.asyncio
    async def test_delete(self, partition_store):
        await partition_store.put("a", b"x")
        assert await partition_store.delete("a") is True
        assert await partition_store.delete("a") is False

    @pytest.mark.asyncio
    async def test_prefix_is_applied(self, blob_backend):
        store = PartitionStore(blob_backend, PartitionStoreConfig(prefix="shard-7/", retry_delay_ms=0))
        await store.put("vectors/c.parquet", b"x")
        assert blob_backend.keys() == ["shard-7/vectors/c.parquet"]
        assert await store.list("vectors/") == ["vectors/c.parquet"]


class TestRangeReads:

    @pytest.mark.asyncio
    async def test_partial_range(self, partition_store):
        await partition_store.put("k", b"0123456789")
        assert await partition_store.get_partial_range("k", 2, 3) == b"234"

    @pytest.mark.asyncio
    async def test_range_clamped_at_end(self, partition_store):
        await partition_store.put("k", b"0123456789")
        assert await partition_store.get_partial_range("k", 8, 100) == b"89"
        assert await partition_store.get_partial_range("k", 10, 5) == b""
        assert await partition_store.get_partial_range("k", 50, 5) == b""

    @pytest.mark.asyncio
    async def test_range_missing_key(self, partition_store):
        assert await partition_store.get_partial_range("nope", 0, 4) is None

    @pytest.mark.asyncio
    async def test_negative_range(self, partition_store):
        with pytest.raises(ValidationError):
            await partition_store.get_partial_range("k", -1, 4)


class TestListing:

    @pytest.mark.asyncio
    async def test_list_follows_pages(self, blob_backend):
        store = PartitionStore(blob_backend, PartitionStoreConfig(list_page_size=2, retry_delay_ms=0))
        for i in range(5):
            await store.put(f"vectors/cluster-{i}.parquet", b"x")
        await store.put("archive/cluster-0.parquet", b"x")

        keys = await store.list("vectors/")
        assert keys == [f"vectors/cluster-{i}.parquet" for i in range(5)]
        assert len(blob_backend.calls("list_page")) == 3

    @pytest.mark.asyncio
    async def test_list_empty(self, partition_store):
        assert await partition_store.list("vectors/") == []


class TestRetries:

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, partition_store, blob_backend):
        await partition_store.put("k", b"data")
        blob_backend.fail_next("get", times=2)
        assert await partition_store.get("k") == b"data"
        assert len(blob_backend.calls("get")) == 3
        stats = partition_store.get_stats()
        assert stats["retries"] == 2
        assert stats["errors"] == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self, partition_store, blob_backend):
        blob_backend.fail_always("put")
        with pytest.raises(StoreUnavailableError) as exc:
            await partition_store.put("k", b"data")
        assert exc.value.operation == "put"
        assert exc.value.key == "k"
        assert exc.value.attempts == 3
        assert "injected failure" in str(exc.value)
        assert len(blob_backend.calls("put")) == 3

    @pytest.mark.asyncio
    async def test_irrecoverable_errors_not_retried(self, partition_store, blob_backend):
        blob_backend.raise_with(DataCorruptionError("k", "bad bytes")).fail_always("get")
        with pytest.raises(DataCorruptionError):
            await partition_store.get("k")
        assert len(blob_backend.calls("get")) == 1

    @pytest.mark.asyncio
    async def test_backoff_delays(self, blob_backend):
        store = PartitionStore(
            blob_backend,
            PartitionStoreConfig(max_retries=3, retry_delay_ms=100, retry_backoff_multiplier=2.0),
        )
        blob_backend.fail_always("head")
        with patch("vectorlake.storage.partition_store.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(StoreUnavailableError):
                await store.head("k")
        assert [c.args[0] for c in sleep.call_args_list] == [0.1, 0.2, 0.4]

    @pytest.mark.asyncio
    async def test_request_counters(self, partition_store):
        await partition_store.put("k", b"abcd")
        await partition_store.get("k")
        stats = partition_store.get_stats()
        assert stats["backend"] == "flaky-memory"
        assert stats["requests"] == {"put": 1, "get": 1}
        assert stats["total_requests"] == 2
        assert stats["bytes_written"] == 4
        assert stats["bytes_read"] == 4


class TestFileSystemBackend:

    @pytest.mark.asyncio
    async def test_round_trip_with_metadata(self, tmp_path):
        store = PartitionStore(FileSystemBlobBackend(tmp_path / "blobs"))
        meta = PartitionMetadata("cluster-3", 2, 128, "snappy")
        await store.put("vectors/cluster-3.parquet", b"abc", meta)

        assert (tmp_path / "blobs" / "vectors" / "cluster-3.parquet").read_bytes() == b"abc"
        assert await store.get("vectors/cluster-3.parquet") == b"abc"
        head = await store.head("vectors/cluster-3.parquet")
        assert head.cluster_id == "cluster-3"
        assert head.compression_type == "snappy"
        assert await store.list() == ["vectors/cluster-3.parquet"]
        assert await store.get_partial_range("vectors/cluster-3.parquet", 1, 10) == b"bc"

    @pytest.mark.asyncio
    async def test_delete_removes_sidecar(self, tmp_path):
        backend = FileSystemBlobBackend(tmp_path)
        store = PartitionStore(backend)
        await store.put("a/b", b"x", {"k": "v"})
        assert await store.delete("a/b") is True
        assert not (tmp_path / "a" / "b.meta.json").exists()
        assert await store.get("a/b") is None

    @pytest.mark.asyncio
    async def test_rejects_path_traversal(self, tmp_path):
        store = PartitionStore(FileSystemBlobBackend(tmp_path))
        with pytest.raises(ValidationError):
            await store.put("../escape", b"x")

    def test_create_backend(self, tmp_path):
        assert isinstance(create_backend(PartitionStoreConfig()), InMemoryBlobBackend)
        fs = create_backend(PartitionStoreConfig(backend="filesystem", root_dir=str(tmp_path)))
        assert isinstance(fs, FileSystemBlobBackend)
