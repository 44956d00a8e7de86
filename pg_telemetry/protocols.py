"""
Telemetry protocols defining contracts between components.

These protocols define what each collaborator promises to provide,
ensuring clean separation of concerns and testability.
"""

from datetime import datetime
from typing import List, Optional, Protocol, Set, runtime_checkable

from pg_telemetry.schemas import (
    ActiveOperation,
    CollectionRun,
    CounterReading,
    LockEdge,
    PartitionInfo,
    ProgressRecord,
    ReplicaStats,
    Sample,
    Snapshot,
    StatementStats,
    TableStats,
    WaitEventCount,
)


# ============================================================================
# OBSERVED SYSTEM - read-only source of state and counters
# ============================================================================


@runtime_checkable
class ObservedSystem(Protocol):
    """
    Read-only view of the system being observed.

    The point-in-time state is read one sub-collection at a time so that
    the admission guard and the mode ladder can skip the expensive pieces
    while keeping the cheap aggregate.
    """

    supports_lock_observation: bool

    async def read_wait_events(self) -> List[WaitEventCount]:
        """
        Aggregate wait events by (category, event, state).

        Promises:
        - Cheapest sub-collection, always enabled
        - Excludes the collector's own unit
        """
        ...

    async def read_active_operations(self, limit: int) -> List[ActiveOperation]:
        """
        Top-N non-idle operations, oldest first.

        Promises:
        - Returns at most ``limit`` operations
        """
        ...

    async def read_lock_graph(self) -> List[LockEdge]:
        """
        Blocked/blocking pairs with blocked duration.

        Promises:
        - May be quadratic in the number of blocked units
        - May wait on lock-manager state
        """
        ...

    async def read_progress(self) -> List[ProgressRecord]:
        """Progress of long-running maintenance operations."""
        ...

    async def read_cumulative_counters(self) -> CounterReading:
        """
        Cumulative counters, point-in-time gauges and structural marker.

        Promises:
        - Counters are monotonically non-decreasing within one epoch
        - Epoch changes when the platform restarts or resets its stats
        """
        ...

    async def read_structural_lock_events(self) -> Set[str]:
        """
        Categories of metadata objects currently held under an exclusive lock.

        Promises:
        - Any structural mutation in progress shows up here, whatever the
          text of the command that caused it
        - Raises NotImplementedError when ``supports_lock_observation`` is False
        """
        ...

    async def read_own_storage_footprint(self) -> Optional[int]:
        """
        Bytes used by the collector's own storage on the observed system.

        Returns None when the storage engine is not hosted there.
        """
        ...

    async def count_active_units(self) -> int:
        """Cheap aggregate: units currently doing work."""
        ...

    async def count_blocked_units(self) -> int:
        """Cheap aggregate: units currently waiting on a lock."""
        ...

    async def unit_capacity(self) -> int:
        """Maximum concurrent units the observed system accepts."""
        ...

    async def read_table_stats(self, tables: List[str]) -> List[TableStats]:
        """Cumulative statistics for the given ``schema.table`` names."""
        ...

    async def read_statement_stats(self, limit: int, min_calls: int) -> List[StatementStats]:
        """
        Cumulative statistics of the most expensive statements.

        Returns an empty list when the platform does not track statements.
        """
        ...

    async def read_replication(self) -> List[ReplicaStats]:
        """Replicas currently streaming from the observed system."""
        ...


# ============================================================================
# STORAGE PROTOCOL - What storage backends must provide
# ============================================================================


@runtime_checkable
class TelemetryStorage(Protocol):
    """
    Append-only, time-partitioned store.

    Samples and snapshots are never updated after creation. Cleanup drops
    whole partitions. Collection runs are the only rows that change
    (created at start, completed once).
    """

    async def ensure_partitions(self, now: datetime, lookahead_days: int) -> List[str]:
        """
        Create partitions from today up to ``lookahead_days`` ahead.

        Promises:
        - Idempotent
        - Returns the names of partitions actually created
        """
        ...

    async def list_partitions(self) -> List[PartitionInfo]:
        ...

    async def drop_partitions_before(self, cutoff: datetime) -> List[PartitionInfo]:
        """
        Drop every partition whose whole range ends at or before ``cutoff``.

        Promises:
        - Never deletes individual rows
        - Never drops a partition that still covers ``cutoff``
        """
        ...

    async def append_sample(self, sample: Sample) -> None:
        ...

    async def append_snapshot(self, snapshot: Snapshot) -> None:
        ...

    async def samples_between(self, start: datetime, end: datetime) -> List[Sample]:
        ...

    async def snapshots_between(self, start: datetime, end: datetime) -> List[Snapshot]:
        ...

    async def snapshot_at_or_before(self, at: datetime) -> Optional[Snapshot]:
        ...

    async def snapshot_at_or_after(self, at: datetime) -> Optional[Snapshot]:
        ...

    async def nearest_sample(self, at: datetime) -> Optional[Sample]:
        ...

    async def nearest_snapshot(self, at: datetime) -> Optional[Snapshot]:
        ...

    async def latest_sample(self) -> Optional[Sample]:
        ...

    async def latest_snapshot(self) -> Optional[Snapshot]:
        ...

    async def try_begin_run(
        self, run: CollectionRun, stale_before: datetime
    ) -> Optional[CollectionRun]:
        """
        Insert ``run`` unless another run of the same task is in flight.

        Promises:
        - In-flight runs started before ``stale_before`` are marked abandoned first
        - Returns the in-flight run that blocked the insert, or None on success
        """
        ...

    async def record_run(self, run: CollectionRun) -> None:
        """Store a run that is already complete (skipped runs)."""
        ...

    async def complete_run(self, run: CollectionRun) -> None:
        ...

    async def last_executed_run(self, task: str) -> Optional[CollectionRun]:
        """Most recent completed run that was not skipped."""
        ...

    async def recent_runs(
        self, task: Optional[str] = None, since: Optional[datetime] = None
    ) -> List[CollectionRun]:
        ...

    async def prune_runs(self, before: datetime) -> int:
        ...

    async def size_bytes(self) -> int:
        ...
