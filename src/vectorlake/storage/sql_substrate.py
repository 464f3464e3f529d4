"""
SQLite persistence substrate.

Thin execute/query wrapper over a single sqlite3 connection, shared by the
tier index, the centroid table and the hot vector store so that one shard's
state lives in one database file.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Union

from loguru import logger

from vectorlake.core.exceptions import wrap_storage_exception

MEMORY_DATABASE = ":memory:"


class SqliteSubstrate:
    """
    One connection, serialized access.

    File databases run in WAL mode with ``synchronous=NORMAL``; pass
    ``":memory:"`` for an ephemeral database (tests, throwaway shards).
    """

    def __init__(self, path: Union[str, Path] = MEMORY_DATABASE, timeout: float = 30.0):
        self.path = str(path)
        if self.path != MEMORY_DATABASE:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self.path, timeout=timeout, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False

        if self.path != MEMORY_DATABASE:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        logger.debug(f"SQLite substrate opened at {self.path}")

    @property
    def is_memory(self) -> bool:
        return self.path == MEMORY_DATABASE

    def _commit(self) -> None:
        if not self._in_transaction:
            self._conn.commit()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one statement; returns the affected row count."""
        with self._lock:
            try:
                cursor = self._conn.execute(sql, params)
                self._commit()
                return cursor.rowcount
            except sqlite3.Error as e:
                raise wrap_storage_exception("sqlite", "execute", e) from e

    def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> int:
        with self._lock:
            try:
                cursor = self._conn.executemany(sql, rows)
                self._commit()
                return cursor.rowcount
            except sqlite3.Error as e:
                raise wrap_storage_exception("sqlite", "executemany", e) from e

    def executescript(self, script: str) -> None:
        with self._lock:
            try:
                self._conn.executescript(script)
            except sqlite3.Error as e:
                raise wrap_storage_exception("sqlite", "executescript", e) from e

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise wrap_storage_exception("sqlite", "query", e) from e

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as e:
                raise wrap_storage_exception("sqlite", "query_one", e) from e

    @contextmanager
    def transaction(self) -> Iterator["SqliteSubstrate"]:
        """
        Group statements into one commit; any exception rolls everything back.

        Nested use joins the outer transaction.
        """
        with self._lock:
            if self._in_transaction:
                yield self
                return
            self._in_transaction = True
            try:
                self._conn.execute("BEGIN")
                yield self
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise
            finally:
                self._in_transaction = False

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.debug(f"SQLite substrate closed ({self.path})")
