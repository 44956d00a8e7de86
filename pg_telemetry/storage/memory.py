"""
In-process storage backend.

Keeps samples and snapshots in day partitions held in memory. Used when
no database is configured and throughout the test suite. Size is the
serialized size of what is stored, so the size governor sees the same
growth it would see on disk.
"""

import bisect
import logging
from datetime import datetime
from typing import Dict, List, Optional

from pg_telemetry.schemas import CollectionRun, PartitionInfo, RunStatus, Sample, Snapshot
from pg_telemetry.storage.partitions import (
    as_utc,
    partition_bounds,
    partition_name,
    partitions_ahead,
)

logger = logging.getLogger(__name__)


class _Partition:
    """One day of samples and snapshots, kept sorted by capture time."""

    def __init__(self, start: datetime, end: datetime):
        self.name = partition_name(start)
        self.start = start
        self.end = end
        self.samples: List[Sample] = []
        self.sample_keys: List[datetime] = []
        self.snapshots: List[Snapshot] = []
        self.snapshot_keys: List[datetime] = []
        self.size_bytes = 0

    def add_sample(self, sample: Sample) -> None:
        key = as_utc(sample.captured_at)
        index = bisect.bisect_right(self.sample_keys, key)
        self.sample_keys.insert(index, key)
        self.samples.insert(index, sample)
        self.size_bytes += len(sample.model_dump_json())

    def add_snapshot(self, snapshot: Snapshot) -> None:
        key = as_utc(snapshot.captured_at)
        index = bisect.bisect_right(self.snapshot_keys, key)
        self.snapshot_keys.insert(index, key)
        self.snapshots.insert(index, snapshot)
        self.size_bytes += len(snapshot.model_dump_json())

    def info(self) -> PartitionInfo:
        return PartitionInfo(
            name=self.name,
            start=self.start,
            end=self.end,
            samples=len(self.samples),
            snapshots=len(self.snapshots),
            size_bytes=self.size_bytes,
        )


class MemoryStorageBackend:
    """Partitioned in-memory implementation of ``TelemetryStorage``."""

    def __init__(self):
        self._partitions: Dict[str, _Partition] = {}
        self._runs: Dict[str, CollectionRun] = {}

    # ------------------------------------------------------------------
    # Partitions
    # ------------------------------------------------------------------

    def _ordered(self) -> List[_Partition]:
        return sorted(self._partitions.values(), key=lambda p: p.start)

    def _partition_for(self, at: datetime) -> _Partition:
        start, end = partition_bounds(at)
        name = partition_name(start)
        partition = self._partitions.get(name)
        if partition is None:
            logger.warning(f"Partition {name} was not created ahead of need, creating now")
            partition = _Partition(start, end)
            self._partitions[name] = partition
        return partition

    async def ensure_partitions(self, now: datetime, lookahead_days: int) -> List[str]:
        created = []
        for name, start, end in partitions_ahead(now, lookahead_days):
            if name not in self._partitions:
                self._partitions[name] = _Partition(start, end)
                created.append(name)
        if created:
            logger.debug(f"Created partitions: {', '.join(created)}")
        return created

    async def list_partitions(self) -> List[PartitionInfo]:
        return [p.info() for p in self._ordered()]

    async def drop_partitions_before(self, cutoff: datetime) -> List[PartitionInfo]:
        cutoff = as_utc(cutoff)
        dropped = []
        for partition in self._ordered():
            if partition.end <= cutoff:
                dropped.append(partition.info())
                del self._partitions[partition.name]
        return dropped

    # ------------------------------------------------------------------
    # Samples and snapshots
    # ------------------------------------------------------------------

    async def append_sample(self, sample: Sample) -> None:
        self._partition_for(sample.captured_at).add_sample(sample)

    async def append_snapshot(self, snapshot: Snapshot) -> None:
        self._partition_for(snapshot.captured_at).add_snapshot(snapshot)

    def _all_samples(self) -> List[Sample]:
        return [s for p in self._ordered() for s in p.samples]

    def _all_snapshots(self) -> List[Snapshot]:
        return [s for p in self._ordered() for s in p.snapshots]

    async def samples_between(self, start: datetime, end: datetime) -> List[Sample]:
        start, end = as_utc(start), as_utc(end)
        return [s for s in self._all_samples() if start <= as_utc(s.captured_at) <= end]

    async def snapshots_between(self, start: datetime, end: datetime) -> List[Snapshot]:
        start, end = as_utc(start), as_utc(end)
        return [s for s in self._all_snapshots() if start <= as_utc(s.captured_at) <= end]

    async def snapshot_at_or_before(self, at: datetime) -> Optional[Snapshot]:
        at = as_utc(at)
        candidates = [s for s in self._all_snapshots() if as_utc(s.captured_at) <= at]
        return candidates[-1] if candidates else None

    async def snapshot_at_or_after(self, at: datetime) -> Optional[Snapshot]:
        at = as_utc(at)
        for snapshot in self._all_snapshots():
            if as_utc(snapshot.captured_at) >= at:
                return snapshot
        return None

    async def nearest_sample(self, at: datetime) -> Optional[Sample]:
        at = as_utc(at)
        samples = self._all_samples()
        if not samples:
            return None
        return min(samples, key=lambda s: abs((as_utc(s.captured_at) - at).total_seconds()))

    async def nearest_snapshot(self, at: datetime) -> Optional[Snapshot]:
        at = as_utc(at)
        snapshots = self._all_snapshots()
        if not snapshots:
            return None
        return min(snapshots, key=lambda s: abs((as_utc(s.captured_at) - at).total_seconds()))

    async def latest_sample(self) -> Optional[Sample]:
        samples = self._all_samples()
        return samples[-1] if samples else None

    async def latest_snapshot(self) -> Optional[Snapshot]:
        snapshots = self._all_snapshots()
        return snapshots[-1] if snapshots else None

    # ------------------------------------------------------------------
    # Collection runs
    # ------------------------------------------------------------------

    async def try_begin_run(
        self, run: CollectionRun, stale_before: datetime
    ) -> Optional[CollectionRun]:
        for existing in list(self._runs.values()):
            if existing.task != run.task or not existing.in_flight:
                continue
            if as_utc(existing.started_at) < as_utc(stale_before):
                logger.warning(
                    f"Abandoning stale {existing.task} run {existing.run_id} "
                    f"started at {existing.started_at.isoformat()}"
                )
                self._runs[existing.run_id] = existing.model_copy(
                    update={
                        "completed_at": run.started_at,
                        "status": RunStatus.ABANDONED,
                        "success": False,
                        "error": "run never completed",
                    }
                )
                continue
            return existing.model_copy()
        self._runs[run.run_id] = run.model_copy()
        return None

    async def record_run(self, run: CollectionRun) -> None:
        self._runs[run.run_id] = run.model_copy()

    async def complete_run(self, run: CollectionRun) -> None:
        self._runs[run.run_id] = run.model_copy()

    async def last_executed_run(self, task: str) -> Optional[CollectionRun]:
        executed = [r for r in self._runs.values() if r.task == task and r.executed]
        if not executed:
            return None
        return max(executed, key=lambda r: as_utc(r.completed_at)).model_copy()

    async def recent_runs(
        self, task: Optional[str] = None, since: Optional[datetime] = None
    ) -> List[CollectionRun]:
        runs = [
            r
            for r in self._runs.values()
            if (task is None or r.task == task)
            and (since is None or as_utc(r.started_at) >= as_utc(since))
        ]
        return [r.model_copy() for r in sorted(runs, key=lambda r: as_utc(r.started_at))]

    async def prune_runs(self, before: datetime) -> int:
        before = as_utc(before)
        expired = [
            run_id
            for run_id, r in self._runs.items()
            if not r.in_flight and as_utc(r.started_at) < before
        ]
        for run_id in expired:
            del self._runs[run_id]
        return len(expired)

    async def size_bytes(self) -> int:
        return sum(p.size_bytes for p in self._partitions.values()) + sum(
            len(r.model_dump_json()) for r in self._runs.values()
        )
