"""
Flaky Blob Backend
==================
In-memory BlobBackend that records every request and can be armed to fail.

Failure modes:
    fail_next(n)        - the next n calls of an operation raise, then recover
    fail_always(op)     - every call of an operation raises until reset()
    fail_keys(keys)     - any call touching one of ``keys`` raises
    raise_with(exc)     - exception instance raised by the armed failures
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from vectorlake.storage.partition_store import InMemoryBlobBackend

OPERATIONS = ("get", "head", "put", "delete", "list_page")


class TransientBlobError(Exception):
    """Default injected failure; looks like a flaky network call."""


@dataclass
class BlobRequest:
    operation: str
    key: str
    byte_range: Optional[tuple] = None


class FlakyBlobBackend(InMemoryBlobBackend):
    name = "flaky-memory"

    def __init__(self):
        super().__init__()
        self.requests: List[BlobRequest] = []
        self._pending: Dict[str, int] = {}
        self._always: Set[str] = set()
        self._bad_keys: Set[str] = set()
        self._exc: Exception = TransientBlobError("injected failure")

    # ------------------------------------------------------------------
    # Arming
    # ------------------------------------------------------------------

    def fail_next(self, operation: str, times: int = 1) -> "FlakyBlobBackend":
        self._pending[operation] = self._pending.get(operation, 0) + times
        return self

    def fail_always(self, operation: str) -> "FlakyBlobBackend":
        self._always.add(operation)
        return self

    def fail_keys(self, *keys: str) -> "FlakyBlobBackend":
        self._bad_keys.update(keys)
        return self

    def raise_with(self, exc: Exception) -> "FlakyBlobBackend":
        self._exc = exc
        return self

    def reset(self) -> None:
        self._pending.clear()
        self._always.clear()
        self._bad_keys.clear()
        self._exc = TransientBlobError("injected failure")

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def calls(self, operation: str) -> List[BlobRequest]:
        return [r for r in self.requests if r.operation == operation]

    def keys(self) -> List[str]:
        return sorted(self._objects)

    # ------------------------------------------------------------------
    # BlobBackend
    # ------------------------------------------------------------------

    def _maybe_fail(self, operation: str, key: str) -> None:
        if operation in self._always or key in self._bad_keys:
            raise self._exc
        remaining = self._pending.get(operation, 0)
        if remaining > 0:
            self._pending[operation] = remaining - 1
            raise self._exc

    async def get(self, key, byte_range=None):
        self.requests.append(BlobRequest("get", key, byte_range))
        self._maybe_fail("get", key)
        return await super().get(key, byte_range)

    async def head(self, key):
        self.requests.append(BlobRequest("head", key))
        self._maybe_fail("head", key)
        return await super().head(key)

    async def put(self, key, data, metadata=None):
        self.requests.append(BlobRequest("put", key))
        self._maybe_fail("put", key)
        return await super().put(key, data, metadata)

    async def delete(self, key):
        self.requests.append(BlobRequest("delete", key))
        self._maybe_fail("delete", key)
        return await super().delete(key)

    async def list_page(self, prefix="", cursor=None, limit=1000):
        self.requests.append(BlobRequest("list_page", prefix))
        self._maybe_fail("list_page", prefix)
        return await super().list_page(prefix, cursor, limit)
