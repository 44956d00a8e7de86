"""
Pytest configuration and fixtures for pg_telemetry tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

import pytest

from pg_telemetry.config import ConfigStore
from pg_telemetry.context import TelemetryContext
from pg_telemetry.schemas import (
    ActiveOperation,
    CounterReading,
    LockEdge,
    ProgressRecord,
    ReplicaStats,
    StatementStats,
    TableStats,
    WaitEventCount,
)
from pg_telemetry.service import TelemetryService
from pg_telemetry.storage import MemoryStorageBackend

BASE_TIME = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = BASE_TIME):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


class FakeObservedSystem:
    """
    Scriptable observed system.

    ``read_delay`` advances the clock while wait events are read, which is
    how a slow run looks to the scheduler. ``failures`` maps a method name
    to the exception it raises.
    """

    def __init__(self, clock: Optional[FakeClock] = None, supports_lock_observation: bool = True):
        self.clock = clock
        self.supports_lock_observation = supports_lock_observation
        self.active_units: Optional[int] = 5
        self.blocked_units: Optional[int] = 0
        self.capacity: Optional[int] = 100
        self.wait_events: List[WaitEventCount] = [
            WaitEventCount(category="LWLock", event="WALWrite", state="active", count=2),
            WaitEventCount(category="Client", event="ClientRead", state="idle", count=40),
        ]
        self.operations: List[ActiveOperation] = []
        self.lock_graph: List[LockEdge] = []
        self.progress: List[ProgressRecord] = []
        self.counters = CounterReading(
            counters={"checkpoints_requested": 0, "buffers_backend": 10},
            gauges={"autovacuum_workers": 1},
            structural_marker="m1",
            epoch="e1",
        )
        self.structural_locks: Set[str] = set()
        self.footprint: Optional[int] = None
        self.table_stats: List[TableStats] = []
        self.statements: List[StatementStats] = []
        self.replicas: List[ReplicaStats] = []
        self.read_delay = 0.0
        self.failures: Dict[str, Exception] = {}
        self.calls: List[str] = []

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    async def read_wait_events(self) -> List[WaitEventCount]:
        self._enter("read_wait_events")
        if self.read_delay and self.clock is not None:
            self.clock.advance(self.read_delay)
        return list(self.wait_events)

    async def read_active_operations(self, limit: int) -> List[ActiveOperation]:
        self._enter("read_active_operations")
        return list(self.operations[:limit])

    async def read_lock_graph(self) -> List[LockEdge]:
        self._enter("read_lock_graph")
        return list(self.lock_graph)

    async def read_progress(self) -> List[ProgressRecord]:
        self._enter("read_progress")
        return list(self.progress)

    async def read_cumulative_counters(self) -> CounterReading:
        self._enter("read_cumulative_counters")
        return self.counters.model_copy(deep=True)

    async def read_structural_lock_events(self) -> Set[str]:
        self._enter("read_structural_lock_events")
        if not self.supports_lock_observation:
            raise NotImplementedError("lock observation not supported")
        return set(self.structural_locks)

    async def read_own_storage_footprint(self) -> Optional[int]:
        self._enter("read_own_storage_footprint")
        return self.footprint

    async def count_active_units(self) -> int:
        self._enter("count_active_units")
        return self.active_units

    async def count_blocked_units(self) -> int:
        self._enter("count_blocked_units")
        return self.blocked_units

    async def unit_capacity(self) -> int:
        self._enter("unit_capacity")
        return self.capacity

    async def read_table_stats(self, tables: List[str]) -> List[TableStats]:
        self._enter("read_table_stats")
        return [t for t in self.table_stats if t.qualified_name in tables]

    async def read_statement_stats(self, limit: int, min_calls: int) -> List[StatementStats]:
        self._enter("read_statement_stats")
        ranked = sorted(self.statements, key=lambda s: s.total_exec_time_ms, reverse=True)
        return [s for s in ranked if s.calls >= min_calls][:limit]

    async def read_replication(self) -> List[ReplicaStats]:
        self._enter("read_replication")
        return list(self.replicas)


@pytest.fixture
def clock():
    """Clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def config():
    """Configuration store with defaults."""
    return ConfigStore()


@pytest.fixture
def context(config, clock):
    """Telemetry context on the fake clock."""
    return TelemetryContext(config=config, clock=clock)


@pytest.fixture
def observed(clock):
    """Observed system that supports lock observation."""
    return FakeObservedSystem(clock)


@pytest.fixture
def storage():
    """In-memory storage backend."""
    return MemoryStorageBackend()


@pytest.fixture
def service(observed, storage, config, clock):
    """Telemetry service wired to the fakes."""
    return TelemetryService(observed, storage=storage, config=config, clock=clock)
