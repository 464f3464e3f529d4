"""
Durable centroid table.

The cluster manager itself is purely in-memory; this store snapshots its
centroids into SQLite so that a restarted shard resumes routing immediately.
Vectors are stored as packed float32 blobs.
"""

from typing import Iterable, List

import numpy as np
from loguru import logger

from vectorlake.core.cluster_manager import Centroid
from vectorlake.core.exceptions import DataCorruptionError
from vectorlake.storage.sql_substrate import SqliteSubstrate

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cluster_centroids (
    id TEXT PRIMARY KEY,
    dimension INTEGER NOT NULL,
    vector BLOB NOT NULL,
    vector_count INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
"""


class CentroidStore:
    def __init__(self, substrate: SqliteSubstrate):
        self._db = substrate
        self._ready = False

    def ensure_schema(self) -> None:
        if not self._ready:
            self._db.executescript(_SCHEMA)
            self._ready = True

    def save(self, centroids: Iterable[Centroid]) -> int:
        """Replace the stored table wholesale."""
        self.ensure_schema()
        rows = [
            (
                c.id,
                c.dimension,
                np.asarray(c.vector, dtype="<f4").tobytes(),
                c.vector_count,
                float(c.created_at),
                float(c.updated_at),
            )
            for c in centroids
        ]
        with self._db.transaction():
            self._db.execute("DELETE FROM cluster_centroids")
            self._db.executemany(
                "INSERT INTO cluster_centroids (id, dimension, vector, vector_count, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                rows,
            )
        logger.debug(f"Persisted {len(rows)} centroids")
        return len(rows)

    def load(self) -> List[Centroid]:
        self.ensure_schema()
        centroids = []
        for row in self._db.query(
            "SELECT id, dimension, vector, vector_count, created_at, updated_at FROM cluster_centroids"
        ):
            blob = row["vector"]
            if len(blob) != row["dimension"] * 4:
                raise DataCorruptionError(
                    f"cluster_centroids/{row['id']}",
                    f"vector blob has {len(blob)} bytes, expected {row['dimension'] * 4}",
                )
            created, updated = row["created_at"], row["updated_at"]
            centroids.append(Centroid(
                id=row["id"],
                vector=np.frombuffer(blob, dtype="<f4").astype(np.float64).tolist(),
                dimension=row["dimension"],
                vector_count=row["vector_count"],
                created_at=int(created) if float(created).is_integer() else created,
                updated_at=int(updated) if float(updated).is_integer() else updated,
            ))
        return centroids
