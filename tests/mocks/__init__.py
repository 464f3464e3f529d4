"""
Mock Infrastructure for VectorLake Tests
========================================
In-memory stand-ins for the blob store so partition, search and migration
paths can be exercised offline, including injected transient failures.

Usage:
    from tests.mocks import FlakyBlobBackend
"""

from .flaky_blob import BlobRequest, FlakyBlobBackend, TransientBlobError

__all__ = ["BlobRequest", "FlakyBlobBackend", "TransientBlobError"]
