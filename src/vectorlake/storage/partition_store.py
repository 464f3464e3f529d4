"""
Partition Store Adapter
=======================
Key-addressed blob storage for partition files, with retry/backoff and
partition-metadata parsing layered over a raw provider.

Backends:
    InMemoryBlobBackend   - dict-backed, for tests and ephemeral shards.
    FileSystemBlobBackend - one file per key under a root directory, custom
                            metadata kept in a JSON sidecar next to it.

Contract:
    - Not-found returns None (never raises) and is never retried.
    - Transient failures are retried up to ``max_retries`` times, sleeping
      ``retry_delay_ms * retry_backoff_multiplier ** attempt`` in between.
    - When retries run out, StoreUnavailableError carries the operation,
      the key and the last error's text.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar, Union

from loguru import logger

from vectorlake.core._utils import now_ms, run_in_thread
from vectorlake.core.config import PartitionStoreConfig, validate_partition_store_config
from vectorlake.core.exceptions import IrrecoverableError, StoreUnavailableError, ValidationError

T = TypeVar("T")

# Custom metadata keys written alongside every partition object
META_CLUSTER_ID = "x-partition-cluster-id"
META_VECTOR_COUNT = "x-partition-vector-count"
META_DIMENSIONALITY = "x-partition-dimensionality"
META_COMPRESSION = "x-partition-compression"
META_CREATED_AT = "x-partition-created-at"

_SIDECAR_SUFFIX = ".meta.json"


# =============================================================================
# Raw provider types
# =============================================================================

@dataclass
class BlobHead:
    key: str
    size: int
    uploaded_at: int
    custom_metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class BlobObject:
    key: str
    data: bytes
    size: int
    custom_metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ListPage:
    keys: List[str]
    truncated: bool = False
    cursor: Optional[str] = None


class BlobBackend(ABC):
    """Raw key/value object provider. Implementations return None for missing keys."""

    name = "blob"

    @abstractmethod
    async def get(self, key: str, byte_range: Optional[Tuple[int, int]] = None) -> Optional[BlobObject]:
        """Fetch an object, or ``(offset, length)`` of it, clamped at the end."""

    @abstractmethod
    async def head(self, key: str) -> Optional[BlobHead]:
        """Object size and custom metadata without the body."""

    @abstractmethod
    async def put(self, key: str, data: bytes, metadata: Optional[Mapping[str, str]] = None) -> BlobHead:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def list_page(self, prefix: str = "", cursor: Optional[str] = None, limit: int = 1000) -> ListPage:
        """One page of keys in ascending order; ``cursor`` is opaque to callers."""


def _slice(data: bytes, byte_range: Optional[Tuple[int, int]]) -> bytes:
    if byte_range is None:
        return data
    offset, length = byte_range
    return data[offset:offset + length]


def _page(sorted_keys: List[str], cursor: Optional[str], limit: int) -> ListPage:
    if cursor is not None:
        sorted_keys = [k for k in sorted_keys if k > cursor]
    page = sorted_keys[:limit]
    truncated = len(sorted_keys) > limit
    return ListPage(keys=page, truncated=truncated, cursor=page[-1] if truncated and page else None)


class InMemoryBlobBackend(BlobBackend):
    name = "memory"

    def __init__(self):
        self._objects: Dict[str, Tuple[bytes, Dict[str, str], int]] = {}

    async def get(self, key, byte_range=None):
        stored = self._objects.get(key)
        if stored is None:
            return None
        data, meta, _ = stored
        return BlobObject(key=key, data=_slice(data, byte_range), size=len(data), custom_metadata=dict(meta))

    async def head(self, key):
        stored = self._objects.get(key)
        if stored is None:
            return None
        data, meta, uploaded = stored
        return BlobHead(key=key, size=len(data), uploaded_at=uploaded, custom_metadata=dict(meta))

    async def put(self, key, data, metadata=None):
        uploaded = now_ms()
        self._objects[key] = (bytes(data), dict(metadata or {}), uploaded)
        return BlobHead(key=key, size=len(data), uploaded_at=uploaded, custom_metadata=dict(metadata or {}))

    async def delete(self, key):
        return self._objects.pop(key, None) is not None

    async def list_page(self, prefix="", cursor=None, limit=1000):
        keys = sorted(k for k in self._objects if k.startswith(prefix))
        return _page(keys, cursor, limit)


class FileSystemBlobBackend(BlobBackend):
    """Objects as files under ``root``; ``a/b.parquet`` -> ``root/a/b.parquet``."""

    name = "filesystem"

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        parts = key.split("/")
        if not key or any(p in ("", ".", "..") for p in parts) or key.endswith(_SIDECAR_SUFFIX):
            raise ValidationError("key", "invalid object key", value=key)
        return self.root.joinpath(*parts)

    @staticmethod
    def _sidecar(path: Path) -> Path:
        return path.with_name(path.name + _SIDECAR_SUFFIX)

    def _read_meta(self, path: Path) -> Dict[str, Any]:
        sidecar = self._sidecar(path)
        if not sidecar.exists():
            return {"custom_metadata": {}, "uploaded_at": int(path.stat().st_mtime * 1000)}
        with open(sidecar, "r") as f:
            return json.load(f)

    def _get_sync(self, key, byte_range):
        path = self._path(key)
        if not path.exists():
            return None
        size = path.stat().st_size
        with open(path, "rb") as f:
            if byte_range is None:
                data = f.read()
            else:
                f.seek(byte_range[0])
                data = f.read(byte_range[1])
        meta = self._read_meta(path)
        return BlobObject(key=key, data=data, size=size, custom_metadata=meta["custom_metadata"])

    def _head_sync(self, key):
        path = self._path(key)
        if not path.exists():
            return None
        meta = self._read_meta(path)
        return BlobHead(
            key=key,
            size=path.stat().st_size,
            uploaded_at=meta["uploaded_at"],
            custom_metadata=meta["custom_metadata"],
        )

    def _put_sync(self, key, data, metadata):
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        uploaded = now_ms()
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        tmp.replace(path)
        with open(self._sidecar(path), "w") as f:
            json.dump({"custom_metadata": dict(metadata or {}), "uploaded_at": uploaded}, f)
        return BlobHead(key=key, size=len(data), uploaded_at=uploaded, custom_metadata=dict(metadata or {}))

    def _delete_sync(self, key):
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        sidecar = self._sidecar(path)
        if sidecar.exists():
            sidecar.unlink()
        return True

    def _list_sync(self, prefix, cursor, limit):
        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.endswith(_SIDECAR_SUFFIX) or path.name.endswith(".tmp"):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return _page(sorted(keys), cursor, limit)

    async def get(self, key, byte_range=None):
        return await run_in_thread(self._get_sync, key, byte_range)

    async def head(self, key):
        return await run_in_thread(self._head_sync, key)

    async def put(self, key, data, metadata=None):
        return await run_in_thread(self._put_sync, key, bytes(data), metadata)

    async def delete(self, key):
        return await run_in_thread(self._delete_sync, key)

    async def list_page(self, prefix="", cursor=None, limit=1000):
        return await run_in_thread(self._list_sync, prefix, cursor, limit)


def create_backend(config: PartitionStoreConfig) -> BlobBackend:
    if config.backend == "filesystem":
        return FileSystemBlobBackend(config.root_dir)
    return InMemoryBlobBackend()


# =============================================================================
# Partition metadata
# =============================================================================

@dataclass
class PartitionMetadata:
    """A partition's header, read from object metadata without the body."""
    cluster_id: str
    vector_count: int
    dimensionality: int
    compression_type: str
    size_bytes: int = 0
    created_at: int = field(default_factory=now_ms)

    def to_custom_metadata(self) -> Dict[str, str]:
        return {
            META_CLUSTER_ID: self.cluster_id,
            META_VECTOR_COUNT: str(self.vector_count),
            META_DIMENSIONALITY: str(self.dimensionality),
            META_COMPRESSION: self.compression_type,
            META_CREATED_AT: str(self.created_at),
        }

    @classmethod
    def from_head(cls, head: BlobHead) -> "PartitionMetadata":
        meta = head.custom_metadata
        return cls(
            cluster_id=meta.get(META_CLUSTER_ID, ""),
            vector_count=int(meta.get(META_VECTOR_COUNT, 0)),
            dimensionality=int(meta.get(META_DIMENSIONALITY, 0)),
            compression_type=meta.get(META_COMPRESSION, "none"),
            size_bytes=head.size,
            created_at=int(meta.get(META_CREATED_AT, head.uploaded_at)),
        )


# =============================================================================
# Adapter
# =============================================================================

class PartitionStore:
    """
    Retrying facade over a BlobBackend.

    Keys passed in are relative; the configured ``prefix`` is prepended on
    the way down and stripped from listed keys on the way up.
    """

    def __init__(self, backend: Optional[BlobBackend] = None, config: Optional[PartitionStoreConfig] = None):
        self.config = validate_partition_store_config(config or PartitionStoreConfig())
        self.backend = backend or create_backend(self.config)
        self.prefix = self.config.prefix
        self._requests: Dict[str, int] = {}
        self._errors = 0
        self._retries = 0
        self._bytes_read = 0
        self._bytes_written = 0

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _delay_ms(self, attempt: int) -> float:
        return self.config.retry_delay_ms * (self.config.retry_backoff_multiplier ** attempt)

    async def _with_retry(self, operation: str, key: str, call: Callable[[], Awaitable[T]]) -> T:
        self._requests[operation] = self._requests.get(operation, 0) + 1
        attempts = self.config.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                return await call()
            except IrrecoverableError:
                raise
            except Exception as e:
                last_error = e
                self._errors += 1
                if attempt + 1 >= attempts:
                    break
                delay = self._delay_ms(attempt)
                self._retries += 1
                logger.warning(
                    f"Partition store {operation}('{key}') attempt {attempt + 1}/{attempts} failed: {e}; "
                    f"retrying in {delay:.0f}ms"
                )
                await asyncio.sleep(delay / 1000.0)

        raise StoreUnavailableError(operation, key, attempts, last_error) from last_error

    async def get(self, key: str) -> Optional[bytes]:
        obj = await self._with_retry("get", key, lambda: self.backend.get(self._full_key(key)))
        if obj is None:
            return None
        self._bytes_read += len(obj.data)
        return obj.data

    async def head(self, key: str) -> Optional[PartitionMetadata]:
        head = await self._with_retry("head", key, lambda: self.backend.head(self._full_key(key)))
        return PartitionMetadata.from_head(head) if head is not None else None

    async def exists(self, key: str) -> bool:
        return await self.head(key) is not None

    async def list(self, prefix: str = "") -> List[str]:
        """All keys under ``prefix``, following provider pagination."""
        full_prefix = self._full_key(prefix)
        keys: List[str] = []
        cursor: Optional[str] = None
        while True:
            page = await self._with_retry(
                "list",
                prefix,
                lambda: self.backend.list_page(full_prefix, cursor, self.config.list_page_size),
            )
            keys.extend(k[len(self.prefix):] for k in page.keys)
            if not page.truncated or page.cursor is None:
                break
            cursor = page.cursor
        return keys

    async def put(
        self,
        key: str,
        data: bytes,
        metadata: Optional[Union[PartitionMetadata, Mapping[str, str]]] = None,
    ) -> int:
        """Write an object; returns its size in bytes."""
        custom = metadata.to_custom_metadata() if isinstance(metadata, PartitionMetadata) else dict(metadata or {})
        head = await self._with_retry("put", key, lambda: self.backend.put(self._full_key(key), data, custom))
        self._bytes_written += len(data)
        return head.size

    async def get_partial_range(self, key: str, offset: int, length: int) -> Optional[bytes]:
        """
        Read ``length`` bytes starting at ``offset``.

        The range is clamped at end-of-object; an offset at or past the end
        yields ``b""``. Missing keys return None.
        """
        if offset < 0 or length < 0:
            raise ValidationError("range", "offset and length must be non-negative", value=(offset, length))
        obj = await self._with_retry(
            "get_partial_range", key, lambda: self.backend.get(self._full_key(key), (offset, length))
        )
        if obj is None:
            return None
        data = obj.data[:max(0, min(length, obj.size - offset))]
        self._bytes_read += len(data)
        return data

    async def delete(self, key: str) -> bool:
        return await self._with_retry("delete", key, lambda: self.backend.delete(self._full_key(key)))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": self.backend.name,
            "requests": dict(self._requests),
            "total_requests": sum(self._requests.values()),
            "errors": self._errors,
            "retries": self._retries,
            "bytes_read": self._bytes_read,
            "bytes_written": self._bytes_written,
        }


__all__ = [
    "BlobBackend",
    "BlobHead",
    "BlobObject",
    "ListPage",
    "InMemoryBlobBackend",
    "FileSystemBlobBackend",
    "create_backend",
    "PartitionMetadata",
    "PartitionStore",
]
