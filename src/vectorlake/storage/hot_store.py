"""
Hot-tier vector storage.

Full-precision embeddings of items still in the ``hot`` tier. The truncated
copies used for phase-1 scanning live in memory only and are rebuilt from
this table on startup.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np

from vectorlake.core._utils import now_ms
from vectorlake.storage.sql_substrate import SqliteSubstrate

_SCHEMA = """
CREATE TABLE IF NOT EXISTS hot_vectors (
    id TEXT PRIMARY KEY,
    source_table TEXT NOT NULL,
    embedding BLOB NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    cluster_id TEXT,
    created_at INTEGER NOT NULL,
    size_bytes INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_hot_vectors_cluster ON hot_vectors(cluster_id);
"""

_COLUMNS = "id, source_table, embedding, metadata, cluster_id, created_at, size_bytes"


@dataclass
class HotRecord:
    id: str
    source_table: str
    embedding: np.ndarray
    metadata: Dict[str, Any] = field(default_factory=dict)
    cluster_id: Optional[str] = None
    created_at: int = field(default_factory=now_ms)
    size_bytes: int = 0

    @classmethod
    def from_row(cls, row) -> "HotRecord":
        return cls(
            id=row["id"],
            source_table=row["source_table"],
            embedding=np.frombuffer(row["embedding"], dtype="<f4").copy(),
            metadata=json.loads(row["metadata"] or "{}"),
            cluster_id=row["cluster_id"],
            created_at=row["created_at"],
            size_bytes=row["size_bytes"],
        )


class HotVectorStore:
    def __init__(self, substrate: SqliteSubstrate):
        self._db = substrate
        self._ready = False

    def ensure_schema(self) -> None:
        if not self._ready:
            self._db.executescript(_SCHEMA)
            self._ready = True

    def put(
        self,
        id: str,
        source_table: str,
        embedding,
        metadata: Optional[Dict[str, Any]] = None,
        cluster_id: Optional[str] = None,
    ) -> HotRecord:
        self.ensure_schema()
        blob = np.asarray(embedding, dtype="<f4").tobytes()
        meta_json = json.dumps(metadata or {})
        record = HotRecord(
            id=id,
            source_table=source_table,
            embedding=np.frombuffer(blob, dtype="<f4").copy(),
            metadata=metadata or {},
            cluster_id=cluster_id,
            size_bytes=len(blob) + len(meta_json.encode("utf-8")),
        )
        self._db.execute(
            f"INSERT OR REPLACE INTO hot_vectors ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (id, source_table, blob, meta_json, cluster_id, record.created_at, record.size_bytes),
        )
        return record

    def get(self, id: str) -> Optional[HotRecord]:
        self.ensure_schema()
        row = self._db.query_one(f"SELECT {_COLUMNS} FROM hot_vectors WHERE id = ?", (id,))
        return HotRecord.from_row(row) if row else None

    def get_many(self, ids: Iterable[str]) -> Dict[str, HotRecord]:
        self.ensure_schema()
        ids = list(ids)
        found: Dict[str, HotRecord] = {}
        # Stay under SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ", ".join("?" for _ in chunk)
            for row in self._db.query(
                f"SELECT {_COLUMNS} FROM hot_vectors WHERE id IN ({placeholders})", chunk
            ):
                found[row["id"]] = HotRecord.from_row(row)
        return found

    def delete_many(self, ids: Iterable[str]) -> int:
        self.ensure_schema()
        rows = [(i,) for i in ids]
        if not rows:
            return 0
        with self._db.transaction():
            self._db.executemany("DELETE FROM hot_vectors WHERE id = ?", rows)
        return len(rows)

    def all(self) -> List[HotRecord]:
        self.ensure_schema()
        return [HotRecord.from_row(r) for r in self._db.query(
            f"SELECT {_COLUMNS} FROM hot_vectors ORDER BY created_at ASC, id ASC"
        )]

    def count_and_bytes(self) -> Tuple[int, int]:
        self.ensure_schema()
        row = self._db.query_one("SELECT COUNT(*) AS n, COALESCE(SUM(size_bytes), 0) AS b FROM hot_vectors")
        return int(row["n"]), int(row["b"])
