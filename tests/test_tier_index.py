"""
Tests for TierIndex
===================
Tier bookkeeping, eligibility queries, batch migration and access accounting.
"""

import asyncio

import pytest
import pytest_asyncio

from vectorlake.core._utils import now_ms
from vectorlake.core.exceptions import BatchMigrationError, ValidationError
from vectorlake.core.tier_index import TierEntry, TierIndex, TierUpdate


@pytest_asyncio.fixture
async def index(substrate):
    idx = TierIndex(substrate)
    await idx.ensure_schema()
    return idx


def set_access(substrate, item_id, accessed_at, access_count):
    substrate.execute(
        "UPDATE tier_index SET accessed_at = ?, access_count = ? WHERE id = ?",
        (accessed_at, access_count, item_id),
    )


class TestSchema:

    @pytest.mark.asyncio
    async def test_concurrent_ensure_schema(self, substrate):
        idx = TierIndex(substrate)
        await asyncio.gather(*(idx.ensure_schema() for _ in range(5)))
        assert await idx.get("nothing") is None

    @pytest.mark.asyncio
    async def test_lazy_schema_on_first_call(self, substrate):
        idx = TierIndex(substrate)
        entry = await idx.record("a", "things")
        assert entry.tier == "hot"


class TestSingleRow:

    @pytest.mark.asyncio
    async def test_record_hot(self, index):
        entry = await index.record("a", "things")
        assert entry.tier == "hot"
        assert entry.location is None
        assert entry.access_count == 0
        stored = await index.get("a")
        assert stored == entry

    @pytest.mark.asyncio
    async def test_record_warm_requires_location(self, index):
        with pytest.raises(ValidationError):
            await index.record("a", "things", tier="warm")

    @pytest.mark.asyncio
    async def test_record_unknown_tier(self, index):
        with pytest.raises(ValidationError):
            await index.record("a", "things", tier="frozen", location="x")

    @pytest.mark.asyncio
    async def test_get_missing(self, index):
        assert await index.get("missing") is None

    @pytest.mark.asyncio
    async def test_get_many(self, index):
        await index.record("a", "things")
        await index.record("b", "things", tier="warm", location="vectors/cluster-0.parquet")

        found = await index.get_many(["a", "b", "ghost", "a"])
        assert set(found) == {"a", "b"}
        assert found["a"].tier == "hot"
        assert found["b"].location == "vectors/cluster-0.parquet"
        assert await index.get_many([]) == {}

    @pytest.mark.asyncio
    async def test_get_many_large_batch(self, index):
        for i in range(600):
            await index.record(f"item-{i}", "things")
        found = await index.get_many(f"item-{i}" for i in range(0, 1200, 2))
        assert len(found) == 300

    @pytest.mark.asyncio
    async def test_migrate_preserves_accounting(self, index, substrate):
        created = await index.record("a", "notes")
        set_access(substrate, "a", 123, 4)
        moved = await index.migrate("a", "warm", "vectors/cluster-1.parquet")
        assert moved.tier == "warm"
        assert moved.location == "vectors/cluster-1.parquet"
        assert moved.migrated_at is not None
        assert moved.source_table == "notes"
        assert moved.created_at == created.created_at
        assert moved.access_count == 4
        assert moved.accessed_at == 123

    @pytest.mark.asyncio
    async def test_migrate_unknown_id(self, index):
        assert await index.migrate("ghost", "warm", "vectors/x.parquet") is None

    @pytest.mark.asyncio
    async def test_delete(self, index):
        await index.record("a", "things")
        assert await index.delete("a") is True
        assert await index.delete("a") is False


class TestQueries:

    @pytest.mark.asyncio
    async def test_find_by_tier(self, index):
        await index.record("a", "things")
        await index.record("b", "notes")
        await index.record("c", "things", tier="warm", location="vectors/c.parquet")
        hot = await index.find_by_tier("hot")
        assert {e.id for e in hot} == {"a", "b"}
        assert [e.id for e in await index.find_by_tier("hot", source_table="notes")] == ["b"]

    @pytest.mark.asyncio
    async def test_eligible_never_accessed_first(self, index, substrate):
        for item_id in ("a", "b", "c"):
            await index.record(item_id, "things")
        set_access(substrate, "a", now_ms() - 10_000, 1)
        set_access(substrate, "b", now_ms() - 50_000, 2)
        eligible = await index.find_eligible_for_migration("hot")
        assert [e.id for e in eligible] == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_eligible_or_semantics(self, index, substrate):
        now = now_ms()
        for item_id in ("stale", "fresh_popular", "fresh_unpopular", "untouched"):
            await index.record(item_id, "things")
        set_access(substrate, "stale", now - 100_000, 10)
        set_access(substrate, "fresh_popular", now, 10)
        set_access(substrate, "fresh_unpopular", now, 1)

        eligible = await index.find_eligible_for_migration(
            "hot", access_threshold_ms=60_000, max_access_count=2
        )
        assert {e.id for e in eligible} == {"stale", "fresh_unpopular", "untouched"}

    @pytest.mark.asyncio
    async def test_eligible_limit_and_source_filter(self, index):
        for i in range(5):
            await index.record(f"t{i}", "things")
        await index.record("n0", "notes")
        assert len(await index.find_eligible_for_migration("hot", limit=2)) == 2
        notes = await index.find_eligible_for_migration("hot", source_table="notes")
        assert [e.id for e in notes] == ["n0"]

    @pytest.mark.asyncio
    async def test_eligible_rejects_bad_order_column(self, index):
        with pytest.raises(ValidationError):
            await index.find_eligible_for_migration("hot", order_by="id; DROP TABLE tier_index")

    @pytest.mark.asyncio
    async def test_statistics(self, index):
        await index.record("a", "things")
        await index.record("b", "things", tier="warm", location="vectors/x.parquet")
        await index.record("c", "notes", tier="cold", location="archive/x.parquet")
        stats = await index.get_statistics()
        assert (stats.hot, stats.warm, stats.cold, stats.total) == (1, 1, 1, 3)
        notes = await index.get_statistics(source_table="notes")
        assert notes.total == 1 and notes.cold == 1


class TestBatchMigrate:

    @pytest.mark.asyncio
    async def test_partial_batch(self, index):
        await index.record("a", "things")
        await index.record("b", "things")
        results = await index.batch_migrate([
            TierUpdate("a", "warm", "vectors/1.parquet"),
            {"id": "ghost", "tier": "warm", "location": "vectors/1.parquet"},
            TierUpdate("b", "warm", "vectors/1.parquet"),
        ])
        assert results[0].tier == "warm"
        assert results[1] is None
        assert results[2].location == "vectors/1.parquet"

    @pytest.mark.asyncio
    async def test_atomic_batch_rolls_back(self, index):
        await index.record("a", "things")
        with pytest.raises(BatchMigrationError) as exc:
            await index.batch_migrate(
                [TierUpdate("a", "warm", "vectors/1.parquet"), TierUpdate("ghost", "warm", "vectors/1.parquet")],
                atomic=True,
            )
        assert exc.value.failed_ids == ["ghost"]
        assert (await index.get("a")).tier == "hot"

    @pytest.mark.asyncio
    async def test_batch_validates_before_writing(self, index):
        await index.record("a", "things")
        with pytest.raises(ValidationError):
            await index.batch_migrate([TierUpdate("a", "cold")])
        assert (await index.get("a")).tier == "hot"


class TestAccessAccounting:

    @pytest.mark.asyncio
    async def test_record_access(self, index):
        await index.record("a", "things")
        assert await index.record_access("a") is True
        assert await index.record_access("ghost") is False
        entry = await index.get("a")
        assert entry.access_count == 1
        assert entry.accessed_at is not None

    @pytest.mark.asyncio
    async def test_batch_record_access(self, index):
        await index.record("a", "things")
        await index.record("b", "things")
        assert await index.batch_record_access(["a", "b", "a", "ghost"]) == 3
        assert (await index.get("a")).access_count == 2
        assert await index.batch_record_access([]) == 0

    @pytest.mark.asyncio
    async def test_reset_access_count(self, index):
        await index.record("a", "things")
        await index.record_access("a")
        await index.reset_access_count("a")
        assert (await index.get("a")).access_count == 0


class TestReplaceAll:

    @pytest.mark.asyncio
    async def test_replace_all(self, index):
        await index.record("old", "things")
        entries = [
            TierEntry("x", "things", "warm", "vectors/1.parquet", created_at=1, migrated_at=2),
            TierEntry("y", "things", "hot", None, created_at=3, access_count=5),
        ]
        assert await index.replace_all(entries) == 2
        assert await index.get("old") is None
        assert (await index.get("y")).access_count == 5
        assert [e.id for e in await index.all_entries()] == ["x", "y"]
