"""
Tests for the SQLite substrate and the stores layered on it
(centroid table, hot vector table).
"""

import numpy as np
import pytest

from vectorlake.core.cluster_manager import Centroid
from vectorlake.core.exceptions import DataCorruptionError, StorageError
from vectorlake.storage.centroid_store import CentroidStore
from vectorlake.storage.hot_store import HotVectorStore
from vectorlake.storage.sql_substrate import SqliteSubstrate


class TestSqliteSubstrate:

    def test_execute_and_query(self, substrate):
        substrate.executescript("CREATE TABLE t (k TEXT PRIMARY KEY, v INTEGER);")
        assert substrate.execute("INSERT INTO t VALUES (?, ?)", ("a", 1)) == 1
        row = substrate.query_one("SELECT v FROM t WHERE k = ?", ("a",))
        assert row["v"] == 1
        assert substrate.query_one("SELECT v FROM t WHERE k = ?", ("b",)) is None

    def test_transaction_rolls_back(self, substrate):
        substrate.executescript("CREATE TABLE t (k TEXT PRIMARY KEY);")
        with pytest.raises(RuntimeError):
            with substrate.transaction():
                substrate.execute("INSERT INTO t VALUES ('a')")
                raise RuntimeError("boom")
        assert substrate.query("SELECT * FROM t") == []

    def test_nested_transaction_joins_outer(self, substrate):
        substrate.executescript("CREATE TABLE t (k TEXT PRIMARY KEY);")
        with substrate.transaction():
            substrate.execute("INSERT INTO t VALUES ('a')")
            with substrate.transaction():
                substrate.execute("INSERT INTO t VALUES ('b')")
        assert len(substrate.query("SELECT * FROM t")) == 2

    def test_sqlite_errors_are_wrapped(self, substrate):
        with pytest.raises(StorageError):
            substrate.query("SELECT * FROM no_such_table")

    def test_file_database_persists(self, tmp_path):
        path = tmp_path / "db" / "shard.sqlite"
        db = SqliteSubstrate(path)
        assert not db.is_memory
        db.executescript("CREATE TABLE t (k TEXT);")
        db.execute("INSERT INTO t VALUES ('x')")
        db.close()

        reopened = SqliteSubstrate(path)
        assert reopened.query_one("SELECT k FROM t")["k"] == "x"
        reopened.close()


class TestCentroidStore:

    def test_save_and_load(self, substrate):
        store = CentroidStore(substrate)
        centroids = [
            Centroid(id="cluster-0", vector=[1.0, 0.0], dimension=2, vector_count=3, created_at=10, updated_at=20),
            Centroid(id="cluster-1", vector=[0.0, 0.5], dimension=2),
        ]
        assert store.save(centroids) == 2
        loaded = {c.id: c for c in store.load()}
        assert loaded["cluster-0"].vector == pytest.approx([1.0, 0.0])
        assert loaded["cluster-0"].vector_count == 3
        assert loaded["cluster-0"].updated_at == 20
        assert loaded["cluster-1"].vector == pytest.approx([0.0, 0.5])

    def test_save_replaces(self, substrate):
        store = CentroidStore(substrate)
        store.save([Centroid(id="a", vector=[1.0], dimension=1)])
        store.save([Centroid(id="b", vector=[2.0], dimension=1)])
        assert [c.id for c in store.load()] == ["b"]

    def test_corrupt_blob(self, substrate):
        store = CentroidStore(substrate)
        store.save([Centroid(id="a", vector=[1.0, 2.0], dimension=2)])
        substrate.execute("UPDATE cluster_centroids SET vector = ? WHERE id = 'a'", (b"\x00\x01",))
        with pytest.raises(DataCorruptionError):
            store.load()


class TestHotVectorStore:

    def test_put_get(self, substrate):
        store = HotVectorStore(substrate)
        emb = np.arange(8, dtype=np.float32)
        record = store.put("a", "things", emb, {"ns": "x"}, "cluster-1")
        assert record.size_bytes == 8 * 4 + len('{"ns": "x"}')
        loaded = store.get("a")
        np.testing.assert_array_equal(loaded.embedding, emb)
        assert loaded.metadata == {"ns": "x"}
        assert loaded.cluster_id == "cluster-1"
        assert store.get("missing") is None

    def test_get_many_and_delete(self, substrate):
        store = HotVectorStore(substrate)
        for i in range(5):
            store.put(f"v{i}", "things", np.ones(4) * i)
        found = store.get_many(["v1", "v3", "nope"])
        assert set(found) == {"v1", "v3"}
        assert store.delete_many(["v1", "v3"]) == 2
        assert [r.id for r in store.all()] == ["v0", "v2", "v4"]

    def test_count_and_bytes(self, substrate):
        store = HotVectorStore(substrate)
        assert store.count_and_bytes() == (0, 0)
        store.put("a", "things", np.ones(4))
        store.put("b", "things", np.ones(4))
        count, total = store.count_and_bytes()
        assert count == 2
        assert total == 2 * (16 + len("{}"))
