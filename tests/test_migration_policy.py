"""
Tests for the migration policy engine: decisions, prioritization, batching
and runtime policy updates.
"""

import pytest

from vectorlake.core._utils import now_ms
from vectorlake.core.config import BatchSizeConfig, HotToWarmConfig, MigrationConfig, WarmToColdConfig
from vectorlake.core.exceptions import ConfigurationError
from vectorlake.core.migration_policy import (
    AccessStats,
    MigrationItem,
    MigrationPolicyEngine,
    MigrationPriority,
    TierUsage,
    select_emergency_batch,
)

HOUR = 60 * 60 * 1000


def item(item_id, age_ms=0, size=100, access_count=0, accessed_at=None):
    return MigrationItem(
        id=item_id,
        created_at=now_ms() - age_ms,
        size_bytes=size,
        access_count=access_count,
        accessed_at=accessed_at,
    )


def usage(percent, max_bytes=10_000):
    return TierUsage.from_totals("hot", 10, int(max_bytes * percent / 100), max_bytes)


def accesses(recent):
    return AccessStats("x", recent, recent, now_ms(), HOUR)


@pytest.fixture
def engine():
    return MigrationPolicyEngine(MigrationConfig(
        hot_to_warm=HotToWarmConfig(max_age_ms=HOUR, min_access_count=3, max_hot_size_percent=80.0),
        warm_to_cold=WarmToColdConfig(max_age_ms=24 * HOUR, min_partition_size=500),
        batch_size=BatchSizeConfig(min=2, max=3, target_bytes=1000),
    ))


class TestHotToWarmDecision:

    def test_emergency_overrides_everything(self, engine):
        decision = engine.evaluate_hot_to_warm(item("a"), usage(99.5), accesses(100))
        assert decision.should_migrate
        assert decision.is_emergency
        assert decision.priority is MigrationPriority.EMERGENCY

    def test_frequently_accessed_stays(self, engine):
        decision = engine.evaluate_hot_to_warm(item("a", age_ms=2 * HOUR), usage(90), accesses(3))
        assert not decision.should_migrate
        assert decision.priority is MigrationPriority.ACCESS_FREQUENCY

    def test_ttl_exceeded(self, engine):
        decision = engine.evaluate_hot_to_warm(item("a", age_ms=2 * HOUR), usage(10), accesses(1))
        assert decision.should_migrate
        assert decision.target_tier == "warm"
        assert decision.priority is MigrationPriority.TTL

    def test_size_pressure(self, engine):
        decision = engine.evaluate_hot_to_warm(item("a"), usage(85))
        assert decision.should_migrate
        assert decision.priority is MigrationPriority.SIZE_PRESSURE

    def test_young_item_with_capacity_stays(self, engine):
        decision = engine.evaluate_hot_to_warm(item("a"), usage(10))
        assert not decision.should_migrate

    def test_is_under_pressure(self, engine):
        assert engine.is_under_pressure(usage(81))
        assert not engine.is_under_pressure(usage(80))


class TestWarmToColdDecision:

    def test_retention(self, engine):
        assert engine.evaluate_warm_to_cold(item("a", age_ms=25 * HOUR)).should_migrate
        assert not engine.evaluate_warm_to_cold(item("a", age_ms=HOUR)).should_migrate


class TestBatching:

    def test_prioritize_old_and_cold_first(self, engine):
        ordered = engine.prioritize_candidates([
            item("new", age_ms=HOUR),
            item("old", age_ms=10 * HOUR),
            item("old_popular", age_ms=10 * HOUR, access_count=5),
        ])
        assert [i.id for i in ordered] == ["old", "old_popular", "new"]

    def test_no_items(self, engine):
        selection = engine.select_hot_to_warm_batch([], usage(10))
        assert not selection.should_proceed
        assert selection.items == []

    def test_below_minimum(self, engine):
        selection = engine.select_hot_to_warm_batch([item("a")], usage(10))
        assert not selection.should_proceed
        assert selection.reason == "below minimum batch count"

    def test_pressure_bypasses_minimum(self, engine):
        selection = engine.select_hot_to_warm_batch([item("a")], usage(90))
        assert selection.should_proceed
        assert [i.id for i in selection.items] == ["a"]

    def test_max_count(self, engine):
        items = [item(str(i), age_ms=i * HOUR, size=10) for i in range(6)]
        selection = engine.select_hot_to_warm_batch(items, usage(10))
        assert len(selection.items) == 3
        assert [i.id for i in selection.items] == ["5", "4", "3"]

    def test_target_bytes_with_slack(self, engine):
        # target 1000 * 1.2 slack = 1200
        items = [item("a", age_ms=3 * HOUR, size=700), item("b", age_ms=2 * HOUR, size=400),
                 item("c", age_ms=HOUR, size=400)]
        selection = engine.select_hot_to_warm_batch(items, usage(10))
        assert [i.id for i in selection.items] == ["a", "b"]
        assert selection.total_bytes == 1100

    def test_oversized_single_item_still_selected(self, engine):
        items = [item("huge", age_ms=2 * HOUR, size=50_000), item("b", size=10)]
        selection = engine.select_hot_to_warm_batch(items, usage(90))
        assert [i.id for i in selection.items] == ["huge"]

    def test_warm_to_cold_min_partition(self, engine):
        small = engine.select_warm_to_cold_batch([item("a", size=100)])
        assert not small.should_proceed
        big = engine.select_warm_to_cold_batch([item("a", size=300), item("b", size=300)])
        assert big.should_proceed
        assert big.total_bytes == 600


class TestEmergency:

    def test_lru_order(self):
        now = now_ms()
        items = [
            item("recent", accessed_at=now, size=10),
            item("never", size=10),
            item("stale", accessed_at=now - HOUR, size=10),
        ]
        selected = select_emergency_batch(items, bytes_to_free=20, max_items=10)
        assert [i.id for i in selected] == ["never", "stale"]

    def test_engine_frees_down_to_threshold(self, engine):
        items = [item(str(i), size=1000) for i in range(10)]
        # 99.5% of 10_000 = 9950 bytes; threshold 80% = 8000, so free at least 1950
        selection = engine.select_emergency_batch(items, usage(99.5))
        assert selection.should_proceed
        assert selection.total_bytes >= 1950
        assert len(selection.items) == 2

    def test_respects_max_items(self):
        items = [item(str(i), size=1) for i in range(10)]
        assert len(select_emergency_batch(items, bytes_to_free=100, max_items=4)) == 4


class TestPolicyUpdates:

    def test_update_and_get(self, engine):
        engine.update_policy(hot_to_warm={"max_age_ms": 5 * HOUR}, batch_size={"max": 50})
        policy = engine.get_policy()
        assert policy["hot_to_warm"]["max_age_ms"] == 5 * HOUR
        assert policy["hot_to_warm"]["min_access_count"] == 3
        assert policy["batch_size"]["max"] == 50

    def test_invalid_update_is_rejected_atomically(self, engine):
        with pytest.raises(ConfigurationError):
            engine.update_policy(hot_to_warm={"max_age_ms": 2 * HOUR}, batch_size={"min": 10, "max": 5})
        assert engine.get_policy()["hot_to_warm"]["max_age_ms"] == HOUR

    def test_statistics(self, engine):
        selection = engine.select_hot_to_warm_batch([item("a", size=10), item("b", size=20)], usage(90))
        selection.started_at, selection.completed_at = 100, 140
        engine.record_migration(selection)
        stats = engine.get_statistics()
        assert stats.total_migrations_evaluated == 1
        assert stats.total_bytes_migrated == 30
        assert stats.average_migration_time_ms == 40
        assert stats.last_migration_at is not None

    def test_create_candidate(self, engine):
        candidate = engine.create_candidate(item("a", size=42), "hot", "warm")
        assert (candidate.item_id, candidate.source_tier, candidate.target_tier) == ("a", "hot", "warm")
        assert candidate.estimated_bytes == 42
