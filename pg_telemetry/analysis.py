"""
Query side: deltas, comparisons and views over stored data.

Everything here is a pure function of what the storage engine holds. No
observed-system call is made, so nothing here can trip the breaker or
the admission guard.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pg_telemetry.context import TelemetryContext
from pg_telemetry.exceptions import InvalidWindowError
from pg_telemetry.protocols import TelemetryStorage
from pg_telemetry.schemas import (
    ActivityAt,
    Delta,
    Sample,
    Snapshot,
    StatementDelta,
    StatementStats,
    TableDelta,
    TableStats,
    WaitSummaryRow,
)
from pg_telemetry.storage.partitions import as_utc

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(hours=2)


def markers_differ(start: Snapshot, end: Snapshot) -> Optional[bool]:
    """Whether a checkpoint-like event happened between two snapshots."""
    if start.structural_marker is None or end.structural_marker is None:
        return None
    return start.structural_marker != end.structural_marker


def compute_delta(start: Snapshot, end: Snapshot, samples: Iterable[Sample] = ()) -> Delta:
    """
    Difference between two chronologically ordered snapshots.

    A counter that is missing from ``start``, or that went backwards, has
    an unknown delta (None). A changed epoch means the platform restarted
    or reset its statistics, so every counter delta is unknown.

    Args:
        start: Earlier snapshot
        end: Later snapshot
        samples: Samples captured between the two, for structural changes

    Returns:
        Delta with gauges passed through from ``end``
    """
    epoch_changed = start.epoch is not None and end.epoch is not None and start.epoch != end.epoch
    counter_reset = epoch_changed

    counters: Dict[str, Optional[float]] = {}
    for name, value in end.counters.items():
        previous = start.counters.get(name)
        if epoch_changed or previous is None:
            counters[name] = None
            continue
        diff = value - previous
        if diff < 0:
            counters[name] = None
            counter_reset = True
        else:
            counters[name] = diff

    if counter_reset:
        logger.info(
            f"Counter reset between {start.captured_at.isoformat()} and "
            f"{end.captured_at.isoformat()}, affected deltas reported as unknown"
        )

    changes = [c for s in samples for c in s.structural_changes]
    return Delta(
        start_captured_at=start.captured_at,
        end_captured_at=end.captured_at,
        elapsed_seconds=max(0.0, (as_utc(end.captured_at) - as_utc(start.captured_at)).total_seconds()),
        checkpoint_occurred=markers_differ(start, end),
        counter_reset=counter_reset,
        counters=counters,
        gauges=dict(end.gauges),
        structural_change_detected=bool(changes),
        structural_changes=changes,
    )


def _table_stats(snapshot: Snapshot, qualified_name: str) -> Optional[TableStats]:
    for stats in snapshot.tables:
        if stats.qualified_name == qualified_name:
            return stats
    return None


def _non_negative(end: int, start: int) -> Optional[int]:
    diff = end - start
    return diff if diff >= 0 else None


def _ran_since(start: Optional[datetime], end: Optional[datetime]) -> bool:
    if end is None:
        return False
    return start is None or as_utc(end) > as_utc(start)


def statement_delta(before: Optional[StatementStats], after: StatementStats) -> StatementDelta:
    """
    Change of one statement between two snapshots.

    A statement missing from the start snapshot, or whose call count went
    backwards (statistics reset or entry evicted), counts from zero.
    """
    if before is not None and after.calls < before.calls:
        before = None
    base = before or StatementStats(query_id=after.query_id)

    calls = after.calls - base.calls
    total_ms = after.total_exec_time_ms - base.total_exec_time_ms
    hit = after.shared_blks_hit - base.shared_blks_hit
    read = after.shared_blks_read - base.shared_blks_read
    wal = None
    if after.wal_bytes is not None:
        wal = after.wal_bytes - (base.wal_bytes or 0)

    return StatementDelta(
        query_id=after.query_id,
        query_preview=after.query_preview,
        calls_start=base.calls,
        calls_end=after.calls,
        calls_delta=calls,
        total_exec_time_start_ms=base.total_exec_time_ms,
        total_exec_time_end_ms=after.total_exec_time_ms,
        total_exec_time_delta_ms=round(total_ms, 3),
        mean_exec_time_start_ms=before.mean_exec_time_ms if before else None,
        mean_exec_time_end_ms=after.mean_exec_time_ms,
        rows_delta=after.rows - base.rows,
        shared_blks_hit_delta=hit,
        shared_blks_read_delta=read,
        shared_blks_written_delta=after.shared_blks_written - base.shared_blks_written,
        temp_blks_read_delta=after.temp_blks_read - base.temp_blks_read,
        temp_blks_written_delta=after.temp_blks_written - base.temp_blks_written,
        wal_bytes_delta=wal,
        hit_ratio_pct=round(100.0 * hit / (hit + read), 1) if hit + read > 0 else None,
        time_per_call_ms=round(total_ms / calls, 3) if calls > 0 else None,
    )


class TelemetryAnalysis:
    """Read-only queries over stored samples and snapshots."""

    def __init__(self, context: TelemetryContext, storage: TelemetryStorage):
        self.context = context
        self.storage = storage

    @staticmethod
    def _check_window(start: datetime, end: datetime) -> None:
        if as_utc(start) > as_utc(end):
            raise InvalidWindowError(start, end)

    async def endpoints(
        self, start: datetime, end: datetime
    ) -> Tuple[Optional[Snapshot], Optional[Snapshot]]:
        """
        Snapshots nearest the window's endpoints.

        The start snapshot is the latest at or before ``start`` (else the
        earliest after it); the end snapshot is the earliest at or after
        ``end`` (else the latest before it).
        """
        self._check_window(start, end)
        first = await self.storage.snapshot_at_or_before(start)
        if first is None:
            first = await self.storage.snapshot_at_or_after(start)
        last = await self.storage.snapshot_at_or_after(end)
        if last is None:
            last = await self.storage.snapshot_at_or_before(end)
        return first, last

    async def compare(self, start: datetime, end: datetime) -> Optional[Delta]:
        """
        Delta between the snapshots nearest a window's endpoints.

        Returns:
            None when fewer than two distinct snapshots cover the window
        """
        first, last = await self.endpoints(start, end)
        if first is None or last is None:
            return None
        if as_utc(first.captured_at) >= as_utc(last.captured_at):
            return None
        samples = await self.storage.samples_between(first.captured_at, last.captured_at)
        return compute_delta(first, last, samples)

    async def deltas(self, start: datetime, end: datetime) -> List[Delta]:
        """Delta of every consecutive snapshot pair inside a window."""
        self._check_window(start, end)
        snapshots = await self.storage.snapshots_between(start, end)
        if len(snapshots) < 2:
            return []
        samples = await self.storage.samples_between(
            snapshots[0].captured_at, snapshots[-1].captured_at
        )
        result = []
        for previous, current in zip(snapshots, snapshots[1:]):
            lo, hi = as_utc(previous.captured_at), as_utc(current.captured_at)
            between = [s for s in samples if lo <= as_utc(s.captured_at) <= hi]
            result.append(compute_delta(previous, current, between))
        return result

    async def wait_summary(self, start: datetime, end: datetime) -> List[WaitSummaryRow]:
        """
        Wait events aggregated over a window, busiest first.

        Idle states are excluded. Ranked by total waiters, then by how many
        samples the event appeared in.
        """
        self._check_window(start, end)
        samples = await self.storage.samples_between(start, end)
        idle = set(self.context.settings().idle_states)

        seen: Dict[Tuple[str, str], List[int]] = {}
        for sample in samples:
            per_sample: Dict[Tuple[str, str], int] = {}
            for wait in sample.wait_events:
                if wait.state in idle:
                    continue
                key = (wait.category, wait.event)
                per_sample[key] = per_sample.get(key, 0) + wait.count
            for key, count in per_sample.items():
                seen.setdefault(key, []).append(count)

        rows = [
            WaitSummaryRow(
                category=category,
                event=event,
                sample_count=len(counts),
                total_waiters=sum(counts),
                avg_waiters=round(sum(counts) / len(counts), 2),
                max_waiters=max(counts),
                pct_of_samples=round(100.0 * len(counts) / len(samples), 1) if samples else None,
            )
            for (category, event), counts in seen.items()
        ]
        rows.sort(key=lambda r: (-r.total_waiters, -r.sample_count, r.category, r.event))
        return rows

    async def table_compare(
        self, table: str, start: datetime, end: datetime, schema: str = "public"
    ) -> Optional[TableDelta]:
        """
        Change of one tracked table between the snapshots nearest a window.

        Returns:
            None when the table is absent from either snapshot
        """
        if "." in table and schema == "public":
            schema, table = table.split(".", 1)
        qualified_name = f"{schema}.{table}"

        first, last = await self.endpoints(start, end)
        if first is None or last is None or as_utc(first.captured_at) >= as_utc(last.captured_at):
            return None
        before = _table_stats(first, qualified_name)
        after = _table_stats(last, qualified_name)
        if before is None or after is None:
            return None

        total = after.live_tuples + after.dead_tuples
        return TableDelta(
            table=qualified_name,
            start_captured_at=first.captured_at,
            end_captured_at=last.captured_at,
            elapsed_seconds=(as_utc(last.captured_at) - as_utc(first.captured_at)).total_seconds(),
            size_start_bytes=before.size_bytes,
            size_end_bytes=after.size_bytes,
            size_delta_bytes=after.size_bytes - before.size_bytes,
            total_size_delta_bytes=after.total_size_bytes - before.total_size_bytes,
            live_tuples_start=before.live_tuples,
            live_tuples_end=after.live_tuples,
            dead_tuples_end=after.dead_tuples,
            dead_tuple_ratio=round(100.0 * after.dead_tuples / total, 2) if total else None,
            inserts_delta=_non_negative(after.inserts, before.inserts),
            updates_delta=_non_negative(after.updates, before.updates),
            deletes_delta=_non_negative(after.deletes, before.deletes),
            hot_updates_delta=_non_negative(after.hot_updates, before.hot_updates),
            autovacuum_ran=_ran_since(before.last_autovacuum, after.last_autovacuum),
            autoanalyze_ran=_ran_since(before.last_autoanalyze, after.last_autoanalyze),
            autovacuum_count_delta=_non_negative(after.autovacuum_count, before.autovacuum_count),
            autoanalyze_count_delta=_non_negative(after.autoanalyze_count, before.autoanalyze_count),
        )

    async def statement_compare(
        self, start: datetime, end: datetime, min_delta_ms: float = 100.0, limit: int = 25
    ) -> List[StatementDelta]:
        """
        Statements that used the most execution time between two snapshots.

        Statements are matched by query id and user. When the platform's
        statistics epoch changed between the snapshots every statement
        counts from zero.

        Args:
            start: Window start
            end: Window end
            min_delta_ms: Smallest total execution time delta to report
            limit: Maximum number of statements returned

        Returns:
            Statement deltas, largest total execution time delta first
        """
        first, last = await self.endpoints(start, end)
        if first is None or last is None or as_utc(first.captured_at) >= as_utc(last.captured_at):
            return []

        epoch_changed = first.epoch is not None and last.epoch is not None and first.epoch != last.epoch
        before = {} if epoch_changed else {(s.query_id, s.user_id): s for s in first.statements}
        rows = [
            statement_delta(before.get((s.query_id, s.user_id)), s) for s in last.statements
        ]
        rows = [r for r in rows if r.total_exec_time_delta_ms >= min_delta_ms]
        rows.sort(key=lambda r: (-r.total_exec_time_delta_ms, r.query_id))
        return rows[:limit]

    async def activity_at(self, at: datetime) -> ActivityAt:
        """What was happening around a moment, from the nearest sample and snapshot."""
        at = as_utc(at)
        report = ActivityAt(requested_at=at)
        idle = set(self.context.settings().idle_states)

        sample = await self.storage.nearest_sample(at)
        if sample is not None:
            operations = sample.active_operations
            waits = sorted(
                (w for w in sample.wait_events if w.state not in idle),
                key=lambda w: -w.count,
            )[:3]
            report.sample_captured_at = sample.captured_at
            report.sample_offset_seconds = abs((as_utc(sample.captured_at) - at).total_seconds())
            report.active_units = sum(1 for op in operations if op.state == "active")
            report.waiting_units = sum(1 for op in operations if op.wait_event is not None)
            report.idle_in_transaction = sum(
                1 for op in operations if op.state == "idle in transaction"
            )
            report.top_wait_events = [
                WaitSummaryRow(
                    category=w.category,
                    event=w.event,
                    sample_count=1,
                    total_waiters=w.count,
                    avg_waiters=float(w.count),
                    max_waiters=w.count,
                )
                for w in waits
            ]
            report.blocked_units = len({edge.blocked_unit for edge in sample.lock_graph})
            report.longest_blocked_seconds = max(
                (edge.blocked_duration_seconds for edge in sample.lock_graph), default=None
            )
            report.operations_running = dict(Counter(p.operation for p in sample.progress))
            report.structural_changes = list(sample.structural_changes)

        snapshot = await self.storage.nearest_snapshot(at)
        if snapshot is not None:
            previous = await self.storage.snapshot_at_or_before(
                as_utc(snapshot.captured_at) - timedelta(microseconds=1)
            )
            report.snapshot_captured_at = snapshot.captured_at
            report.snapshot_offset_seconds = abs((as_utc(snapshot.captured_at) - at).total_seconds())
            report.gauges = dict(snapshot.gauges)
            report.checkpoint_occurred = markers_differ(previous, snapshot) if previous else None

        return report

    async def _recent_samples(self, window: Optional[timedelta]) -> Sequence[Sample]:
        now = self.context.now()
        return await self.storage.samples_between(now - (window or RECENT_WINDOW), now)

    async def recent_waits(self, window: Optional[timedelta] = None) -> List[Dict[str, Any]]:
        """Non-idle wait events of recent samples, newest first."""
        idle = set(self.context.settings().idle_states)
        rows = [
            {"captured_at": s.captured_at, **w.model_dump()}
            for s in await self._recent_samples(window)
            for w in s.wait_events
            if w.state not in idle
        ]
        return sorted(rows, key=lambda r: (r["captured_at"], r["count"]), reverse=True)

    async def recent_locks(self, window: Optional[timedelta] = None) -> List[Dict[str, Any]]:
        """Lock edges of recent samples, newest first."""
        rows = [
            {"captured_at": s.captured_at, **edge.model_dump()}
            for s in await self._recent_samples(window)
            for edge in s.lock_graph
        ]
        return sorted(
            rows, key=lambda r: (r["captured_at"], r["blocked_duration_seconds"]), reverse=True
        )

    async def recent_activity(self, window: Optional[timedelta] = None) -> List[Dict[str, Any]]:
        """Active operations of recent samples, newest first."""
        rows = [
            {"captured_at": s.captured_at, **op.model_dump()}
            for s in await self._recent_samples(window)
            for op in s.active_operations
        ]
        return sorted(rows, key=lambda r: r["captured_at"], reverse=True)

    async def recent_progress(self, window: Optional[timedelta] = None) -> List[Dict[str, Any]]:
        """Progress records of recent samples, newest first."""
        rows = [
            {"captured_at": s.captured_at, **p.model_dump()}
            for s in await self._recent_samples(window)
            for p in s.progress
        ]
        return sorted(rows, key=lambda r: r["captured_at"], reverse=True)

    async def recent_replication(self, window: Optional[timedelta] = None) -> List[Dict[str, Any]]:
        """Replica state of recent snapshots, newest first."""
        now = self.context.now()
        snapshots = await self.storage.snapshots_between(now - (window or RECENT_WINDOW), now)
        return [
            {"captured_at": s.captured_at, **r.model_dump()}
            for s in reversed(snapshots)
            for r in sorted(s.replicas, key=lambda r: (r.application or "", r.unit_id))
        ]
