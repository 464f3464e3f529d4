"""
VectorLake Storage Layer
========================

Collaborator boundaries used by the core engine.

Modules:
    sql_substrate: Single-connection SQLite wrapper (WAL, transactions)
    centroid_store: Durable centroid table
    hot_store: Full-precision hot-tier vectors
    partition_store: Blob backends + retrying partition store adapter
    columnar_codec: Parquet encode/decode of record batches and partitions
"""

from .sql_substrate import SqliteSubstrate
from .partition_store import (
    BlobBackend,
    FileSystemBlobBackend,
    InMemoryBlobBackend,
    PartitionMetadata,
    PartitionStore,
)
from .columnar_codec import ColumnarCodec, VectorEntry

__all__ = [
    "SqliteSubstrate",
    "BlobBackend",
    "FileSystemBlobBackend",
    "InMemoryBlobBackend",
    "PartitionMetadata",
    "PartitionStore",
    "ColumnarCodec",
    "VectorEntry",
]
