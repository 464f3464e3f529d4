"""
Migration Policy
================
Decides which items leave the hot tier (and later the warm tier) and groups
them into batches sized for one partition write.

Hot -> warm decision order (first match wins):
    1. Tier at >= 99% capacity            -> migrate (emergency)
    2. recent accesses >= min_access_count -> stay (access-frequency)
    3. age > max_age_ms                    -> migrate (ttl)
    4. tier fill > max_hot_size_percent    -> migrate (size-pressure)
    5. otherwise                           -> stay

Warm -> cold is purely retention based: age > warm_to_cold.max_age_ms.
"""

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Sequence, TypeVar

from vectorlake.core._utils import now_ms
from vectorlake.core.config import (
    MigrationConfig,
    validate_batch_size,
    validate_hot_to_warm,
    validate_warm_to_cold,
)

EMERGENCY_PERCENT = 99.0
# Each recorded access offsets one hour of age when ranking candidates
ACCESS_WEIGHT_MS = 60 * 60 * 1000
# A batch may overshoot target_bytes by this factor before selection stops
TARGET_BYTES_SLACK = 1.2


class MigrationPriority(str, Enum):
    ACCESS_FREQUENCY = "access-frequency"
    TTL = "ttl"
    SIZE_PRESSURE = "size-pressure"
    EMERGENCY = "emergency"
    RETENTION = "retention"


@dataclass
class MigrationItem:
    """Policy view of one stored item."""
    id: str
    created_at: int
    size_bytes: int = 0
    access_count: int = 0
    accessed_at: Optional[int] = None
    tier: str = "hot"
    cluster_id: Optional[str] = None
    location: Optional[str] = None


@dataclass
class MigrationDecision:
    should_migrate: bool
    reason: str
    target_tier: Optional[str] = None
    priority: Optional[MigrationPriority] = None
    is_emergency: bool = False


@dataclass
class TierUsage:
    tier: str
    item_count: int
    total_bytes: int
    max_bytes: int
    percent_full: float

    @classmethod
    def from_totals(cls, tier: str, item_count: int, total_bytes: int, max_bytes: int) -> "TierUsage":
        percent = (total_bytes / max_bytes * 100.0) if max_bytes > 0 else 0.0
        return cls(tier, item_count, total_bytes, max_bytes, percent)


@dataclass
class AccessStats:
    item_id: str
    total_accesses: int
    recent_accesses: int
    last_accessed_at: Optional[int]
    access_window: int


T = TypeVar("T")


@dataclass
class BatchSelection(Generic[T]):
    items: List[T]
    total_bytes: int
    should_proceed: bool
    reason: str
    started_at: Optional[int] = None
    completed_at: Optional[int] = None


@dataclass
class MigrationCandidate:
    item_id: str
    source_tier: str
    target_tier: str
    created_at: int
    estimated_bytes: int
    priority: Optional[float] = None


@dataclass
class MigrationStatistics:
    total_migrations_evaluated: int = 0
    total_bytes_migrated: int = 0
    last_migration_at: Optional[int] = None
    average_migration_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def select_emergency_batch(items: Sequence[MigrationItem], bytes_to_free: int, max_items: int) -> List[MigrationItem]:
    """
    Least-recently-used items until ``bytes_to_free`` is covered.

    Access counts and age thresholds are ignored; never-accessed items go
    first, then oldest access, then oldest creation.
    """
    ordered = sorted(
        items,
        key=lambda i: (i.accessed_at is not None, i.accessed_at or 0, i.created_at, i.id),
    )
    selected: List[MigrationItem] = []
    freed = 0
    for item in ordered:
        if len(selected) >= max_items or (bytes_to_free > 0 and freed >= bytes_to_free):
            break
        selected.append(item)
        freed += item.size_bytes
    return selected


class MigrationPolicyEngine:
    def __init__(self, config: Optional[MigrationConfig] = None):
        config = config or MigrationConfig()
        self.hot_to_warm = validate_hot_to_warm(config.hot_to_warm)
        self.warm_to_cold = validate_warm_to_cold(config.warm_to_cold)
        self.batch_size = validate_batch_size(config.batch_size)
        self._statistics = MigrationStatistics()
        self._migration_times: List[int] = []

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def evaluate_hot_to_warm(
        self,
        item: MigrationItem,
        tier_usage: TierUsage,
        access_stats: Optional[AccessStats] = None,
    ) -> MigrationDecision:
        policy = self.hot_to_warm
        age = now_ms() - item.created_at

        if tier_usage.percent_full >= EMERGENCY_PERCENT:
            return MigrationDecision(
                True, "emergency: tier at critical capacity", "warm", MigrationPriority.EMERGENCY, True
            )

        recent = access_stats.recent_accesses if access_stats is not None else 0
        if recent >= policy.min_access_count:
            return MigrationDecision(False, "frequently accessed in recent window",
                                     priority=MigrationPriority.ACCESS_FREQUENCY)

        if age > policy.max_age_ms:
            return MigrationDecision(True, "TTL exceeded", "warm", MigrationPriority.TTL)

        if tier_usage.percent_full > policy.max_hot_size_percent:
            return MigrationDecision(True, "hot tier size threshold exceeded", "warm",
                                     MigrationPriority.SIZE_PRESSURE)

        return MigrationDecision(False, "below TTL and tier has capacity", priority=MigrationPriority.TTL)

    def evaluate_warm_to_cold(self, item: MigrationItem) -> MigrationDecision:
        age = now_ms() - item.created_at
        if age > self.warm_to_cold.max_age_ms:
            return MigrationDecision(True, "retention period exceeded", "cold", MigrationPriority.RETENTION)
        return MigrationDecision(False, "within retention period", priority=MigrationPriority.RETENTION)

    def is_under_pressure(self, tier_usage: TierUsage) -> bool:
        return tier_usage.percent_full > self.hot_to_warm.max_hot_size_percent

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    def prioritize_candidates(self, items: Sequence[MigrationItem]) -> List[MigrationItem]:
        """Older and less-accessed first: score = age - access_count * 1h, descending."""
        now = now_ms()
        return sorted(
            items,
            key=lambda i: (now - i.created_at) - i.access_count * ACCESS_WEIGHT_MS,
            reverse=True,
        )

    def select_hot_to_warm_batch(
        self,
        items: Sequence[MigrationItem],
        tier_usage: TierUsage,
    ) -> BatchSelection[MigrationItem]:
        batch = self.batch_size
        if not items:
            return BatchSelection([], 0, False, "no items to migrate")

        under_pressure = self.is_under_pressure(tier_usage)
        if not under_pressure and len(items) < batch.min:
            return BatchSelection([], 0, False, "below minimum batch count")

        selected: List[MigrationItem] = []
        total = 0
        for item in self.prioritize_candidates(items):
            if len(selected) >= batch.max:
                break
            if total > 0 and total + item.size_bytes > batch.target_bytes * TARGET_BYTES_SLACK:
                break
            selected.append(item)
            total += item.size_bytes

        if not under_pressure and len(selected) < batch.min:
            return BatchSelection([], 0, False, "below minimum batch count")

        return BatchSelection(
            items=selected,
            total_bytes=total,
            should_proceed=bool(selected),
            reason="batch ready for migration" if selected else "no eligible items",
        )

    def select_warm_to_cold_batch(self, items: Sequence[MigrationItem]) -> BatchSelection[MigrationItem]:
        total = sum(i.size_bytes for i in items)
        if total < self.warm_to_cold.min_partition_size:
            return BatchSelection(list(items), total, False, "below minimum partition size")
        return BatchSelection(list(items), total, True, "batch meets minimum partition size")

    def select_emergency_batch(self, items: Sequence[MigrationItem], tier_usage: TierUsage) -> BatchSelection[MigrationItem]:
        """Free enough bytes to bring the tier back under max_hot_size_percent."""
        target_bytes = int(tier_usage.max_bytes * self.hot_to_warm.max_hot_size_percent / 100.0)
        bytes_to_free = max(0, tier_usage.total_bytes - target_bytes)
        selected = select_emergency_batch(items, bytes_to_free, self.batch_size.max)
        total = sum(i.size_bytes for i in selected)
        return BatchSelection(selected, total, bool(selected), "emergency LRU eviction")

    def create_candidate(self, item: MigrationItem, source_tier: str, target_tier: str) -> MigrationCandidate:
        return MigrationCandidate(
            item_id=item.id,
            source_tier=source_tier,
            target_tier=target_tier,
            created_at=now_ms(),
            estimated_bytes=item.size_bytes,
        )

    # ------------------------------------------------------------------
    # Statistics & runtime updates
    # ------------------------------------------------------------------

    def record_migration(self, batch: BatchSelection) -> None:
        stats = self._statistics
        stats.total_migrations_evaluated += 1
        stats.total_bytes_migrated += batch.total_bytes
        stats.last_migration_at = now_ms()
        if batch.started_at is not None and batch.completed_at is not None:
            self._migration_times.append(batch.completed_at - batch.started_at)
            stats.average_migration_time_ms = sum(self._migration_times) / len(self._migration_times)

    def get_statistics(self) -> MigrationStatistics:
        return dataclasses.replace(self._statistics)

    def update_policy(
        self,
        hot_to_warm: Optional[Dict[str, Any]] = None,
        warm_to_cold: Optional[Dict[str, Any]] = None,
        batch_size: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Merge partial updates; the result is validated before it takes effect."""
        new_h2w = validate_hot_to_warm(dataclasses.replace(self.hot_to_warm, **(hot_to_warm or {})))
        new_w2c = validate_warm_to_cold(dataclasses.replace(self.warm_to_cold, **(warm_to_cold or {})))
        new_batch = validate_batch_size(dataclasses.replace(self.batch_size, **(batch_size or {})))
        self.hot_to_warm, self.warm_to_cold, self.batch_size = new_h2w, new_w2c, new_batch

    def get_policy(self) -> Dict[str, Any]:
        return {
            "hot_to_warm": dataclasses.asdict(self.hot_to_warm),
            "warm_to_cold": dataclasses.asdict(self.warm_to_cold),
            "batch_size": dataclasses.asdict(self.batch_size),
        }


__all__ = [
    "MigrationPriority",
    "MigrationItem",
    "MigrationDecision",
    "TierUsage",
    "AccessStats",
    "BatchSelection",
    "MigrationCandidate",
    "MigrationStatistics",
    "select_emergency_batch",
    "MigrationPolicyEngine",
]
