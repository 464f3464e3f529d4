"""
Tier Index
==========
Durable table mapping item id -> {tier, physical location, timestamps,
access count}.

Every item written to the lakehouse gets exactly one row. The row starts in
the ``hot`` tier with no location; migration moves it to ``warm`` or ``cold``
and records the partition key that now holds the item. Access accounting
(``accessed_at`` / ``access_count``) feeds the migration policy.

Schema setup is lazy and idempotent: the first awaited operation runs the DDL
once, concurrent first callers wait on the same lock.
"""

import asyncio
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from loguru import logger

from vectorlake.core._utils import now_ms
from vectorlake.core.exceptions import BatchMigrationError, ValidationError
from vectorlake.storage.sql_substrate import SqliteSubstrate

TIERS = ("hot", "warm", "cold")
ORDERABLE_COLUMNS = ("accessed_at", "created_at", "access_count")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tier_index (
    id TEXT PRIMARY KEY,
    source_table TEXT NOT NULL,
    tier TEXT NOT NULL CHECK (tier IN ('hot', 'warm', 'cold')),
    location TEXT,
    created_at INTEGER NOT NULL,
    migrated_at INTEGER,
    accessed_at INTEGER,
    access_count INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_tier_index_tier ON tier_index(tier);
CREATE INDEX IF NOT EXISTS idx_tier_index_source ON tier_index(source_table);
CREATE INDEX IF NOT EXISTS idx_tier_index_accessed ON tier_index(accessed_at);
"""

_COLUMNS = "id, source_table, tier, location, created_at, migrated_at, accessed_at, access_count"


@dataclass
class TierEntry:
    id: str
    source_table: str
    tier: str
    location: Optional[str]
    created_at: int
    migrated_at: Optional[int] = None
    accessed_at: Optional[int] = None
    access_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TierEntry":
        return cls(
            id=data["id"],
            source_table=data["source_table"],
            tier=data["tier"],
            location=data.get("location"),
            created_at=int(data["created_at"]),
            migrated_at=data.get("migrated_at"),
            accessed_at=data.get("accessed_at"),
            access_count=int(data.get("access_count", 0)),
        )

    @classmethod
    def from_row(cls, row) -> "TierEntry":
        return cls(
            id=row["id"],
            source_table=row["source_table"],
            tier=row["tier"],
            location=row["location"],
            created_at=row["created_at"],
            migrated_at=row["migrated_at"],
            accessed_at=row["accessed_at"],
            access_count=row["access_count"],
        )


@dataclass
class TierUpdate:
    """One requested tier change for batch_migrate."""
    id: str
    tier: str
    location: Optional[str] = None


@dataclass
class TierStatistics:
    hot: int = 0
    warm: int = 0
    cold: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def _validate_tier(tier: str, location: Optional[str]) -> None:
    if tier not in TIERS:
        raise ValidationError("tier", f"must be one of {TIERS}", value=tier)
    if tier != "hot" and not location:
        raise ValidationError("location", f"location is required for tier '{tier}'")


class TierIndex:
    """Async facade over the ``tier_index`` table."""

    def __init__(self, substrate: SqliteSubstrate):
        self._db = substrate
        self._ready = False
        self._schema_lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        """Create table and indexes once; safe under concurrent first callers."""
        if self._ready:
            return
        async with self._schema_lock:
            if self._ready:
                return
            self._db.executescript(_SCHEMA)
            self._ready = True
            logger.info("Tier index schema ready")

    # ------------------------------------------------------------------
    # Single-row operations
    # ------------------------------------------------------------------

    async def record(
        self,
        id: str,
        source_table: str,
        tier: str = "hot",
        location: Optional[str] = None,
    ) -> TierEntry:
        """
        Create (or replace) an item's row.

        Raises:
            ValidationError: unknown tier, or a warm/cold tier without location.
        """
        _validate_tier(tier, location)
        await self.ensure_schema()
        now = now_ms()
        entry = TierEntry(
            id=id,
            source_table=source_table,
            tier=tier,
            location=location,
            created_at=now,
            migrated_at=now if tier != "hot" else None,
        )
        self._db.execute(
            f"INSERT OR REPLACE INTO tier_index ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (entry.id, entry.source_table, entry.tier, entry.location,
             entry.created_at, entry.migrated_at, entry.accessed_at, entry.access_count),
        )
        return entry

    async def get(self, id: str) -> Optional[TierEntry]:
        await self.ensure_schema()
        row = self._db.query_one(f"SELECT {_COLUMNS} FROM tier_index WHERE id = ?", (id,))
        return TierEntry.from_row(row) if row else None

    async def get_many(self, ids: Iterable[str]) -> Dict[str, TierEntry]:
        """Entries for the known ids among ``ids``; unknown ids are absent."""
        await self.ensure_schema()
        ids = list(dict.fromkeys(ids))
        found: Dict[str, TierEntry] = {}
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ", ".join("?" for _ in chunk)
            for row in self._db.query(
                f"SELECT {_COLUMNS} FROM tier_index WHERE id IN ({placeholders})", chunk
            ):
                found[row["id"]] = TierEntry.from_row(row)
        return found

    async def delete(self, id: str) -> bool:
        await self.ensure_schema()
        return self._db.execute("DELETE FROM tier_index WHERE id = ?", (id,)) > 0

    async def migrate(self, id: str, tier: str, location: Optional[str] = None) -> Optional[TierEntry]:
        """
        Move an item to ``tier``; returns None for an unknown id.

        source_table, created_at and access accounting are preserved.
        """
        _validate_tier(tier, location)
        await self.ensure_schema()
        updated = self._db.execute(
            "UPDATE tier_index SET tier = ?, location = ?, migrated_at = ? WHERE id = ?",
            (tier, location, now_ms(), id),
        )
        if not updated:
            return None
        return await self.get(id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def find_by_tier(self, tier: str, source_table: Optional[str] = None) -> List[TierEntry]:
        await self.ensure_schema()
        sql = f"SELECT {_COLUMNS} FROM tier_index WHERE tier = ?"
        params: List[Any] = [tier]
        if source_table is not None:
            sql += " AND source_table = ?"
            params.append(source_table)
        sql += " ORDER BY created_at ASC, id ASC"
        return [TierEntry.from_row(r) for r in self._db.query(sql, params)]

    async def find_eligible_for_migration(
        self,
        from_tier: str,
        access_threshold_ms: Optional[int] = None,
        max_access_count: Optional[int] = None,
        source_table: Optional[str] = None,
        limit: Optional[int] = None,
        order_by: str = "accessed_at",
        direction: str = "asc",
    ) -> List[TierEntry]:
        """
        Items in ``from_tier`` that are never accessed, stale, or unpopular.

        An item qualifies if ``accessed_at`` is NULL, or it predates
        ``now - access_threshold_ms``, or ``access_count <= max_access_count``.
        With neither criterion given every item in the tier qualifies.
        NULLs sort first so never-touched items lead an LRU ordering.
        """
        if order_by not in ORDERABLE_COLUMNS:
            raise ValidationError("order_by", f"must be one of {ORDERABLE_COLUMNS}", value=order_by)
        if direction.lower() not in ("asc", "desc"):
            raise ValidationError("direction", "must be 'asc' or 'desc'", value=direction)
        await self.ensure_schema()

        sql = f"SELECT {_COLUMNS} FROM tier_index WHERE tier = ?"
        params: List[Any] = [from_tier]
        if source_table is not None:
            sql += " AND source_table = ?"
            params.append(source_table)

        criteria = []
        if access_threshold_ms is not None:
            criteria.append("accessed_at < ?")
            params.append(now_ms() - access_threshold_ms)
        if max_access_count is not None:
            criteria.append("access_count <= ?")
            params.append(max_access_count)
        if criteria:
            sql += " AND (accessed_at IS NULL OR " + " OR ".join(criteria) + ")"

        sql += f" ORDER BY ({order_by} IS NULL) DESC, {order_by} {direction.upper()}, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [TierEntry.from_row(r) for r in self._db.query(sql, params)]

    async def get_statistics(self, source_table: Optional[str] = None) -> TierStatistics:
        await self.ensure_schema()
        sql = "SELECT tier, COUNT(*) AS n FROM tier_index"
        params: List[Any] = []
        if source_table is not None:
            sql += " WHERE source_table = ?"
            params.append(source_table)
        sql += " GROUP BY tier"
        stats = TierStatistics()
        for row in self._db.query(sql, params):
            setattr(stats, row["tier"], row["n"])
        stats.total = stats.hot + stats.warm + stats.cold
        return stats

    async def all_entries(self) -> List[TierEntry]:
        await self.ensure_schema()
        rows = self._db.query(f"SELECT {_COLUMNS} FROM tier_index ORDER BY created_at ASC, id ASC")
        return [TierEntry.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Batch migration
    # ------------------------------------------------------------------

    async def batch_migrate(
        self,
        updates: Sequence[Union[TierUpdate, Dict[str, Any]]],
        atomic: bool = False,
    ) -> List[Optional[TierEntry]]:
        """
        Apply several tier changes.

        Returns one entry per update, None where the id is unknown. With
        ``atomic=True`` an unknown id aborts the whole batch: nothing is
        written and BatchMigrationError lists the offending ids.
        """
        normalized = [u if isinstance(u, TierUpdate) else TierUpdate(**u) for u in updates]
        for u in normalized:
            _validate_tier(u.tier, u.location)
        await self.ensure_schema()

        results: List[Optional[TierEntry]] = []
        now = now_ms()
        with self._db.transaction():
            missing: List[str] = []
            for u in normalized:
                changed = self._db.execute(
                    "UPDATE tier_index SET tier = ?, location = ?, migrated_at = ? WHERE id = ?",
                    (u.tier, u.location, now, u.id),
                )
                if not changed:
                    missing.append(u.id)
            if atomic and missing:
                # Raising inside the transaction rolls back the applied updates
                raise BatchMigrationError(missing, reason=f"{len(missing)} unknown id(s)")

        for u in normalized:
            results.append(await self.get(u.id))
        if missing:
            logger.debug(f"batch_migrate skipped {len(missing)} unknown id(s)")
        return results

    # ------------------------------------------------------------------
    # Access accounting
    # ------------------------------------------------------------------

    async def record_access(self, id: str) -> bool:
        await self.ensure_schema()
        return self._db.execute(
            "UPDATE tier_index SET access_count = access_count + 1, accessed_at = ? WHERE id = ?",
            (now_ms(), id),
        ) > 0

    async def batch_record_access(self, ids: Iterable[str]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        await self.ensure_schema()
        now = now_ms()
        updated = 0
        with self._db.transaction():
            for item_id in ids:
                updated += self._db.execute(
                    "UPDATE tier_index SET access_count = access_count + 1, accessed_at = ? WHERE id = ?",
                    (now, item_id),
                )
        return updated

    async def reset_access_count(self, id: str) -> bool:
        await self.ensure_schema()
        return self._db.execute(
            "UPDATE tier_index SET access_count = 0 WHERE id = ?", (id,)
        ) > 0

    # ------------------------------------------------------------------
    # Snapshot support
    # ------------------------------------------------------------------

    async def replace_all(self, entries: Iterable[TierEntry]) -> int:
        """Replace the table contents wholesale (snapshot restore)."""
        rows = [
            (e.id, e.source_table, e.tier, e.location, e.created_at,
             e.migrated_at, e.accessed_at, e.access_count)
            for e in entries
        ]
        await self.ensure_schema()
        with self._db.transaction():
            self._db.execute("DELETE FROM tier_index")
            self._db.executemany(
                f"INSERT INTO tier_index ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)", rows
            )
        return len(rows)


__all__ = ["TIERS", "TierEntry", "TierUpdate", "TierStatistics", "TierIndex"]
