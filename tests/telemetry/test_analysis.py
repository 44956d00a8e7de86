"""
Unit tests for deltas, comparisons and stored-data views.
"""

import pytest
from datetime import timedelta

from pg_telemetry.analysis import TelemetryAnalysis, compute_delta, markers_differ, statement_delta
from pg_telemetry.exceptions import InvalidWindowError
from pg_telemetry.schemas import (
    ActiveOperation,
    ChangeDetectionStrategy,
    LockEdge,
    ProgressRecord,
    ReplicaStats,
    Sample,
    Snapshot,
    StatementStats,
    StructuralChange,
    TableStats,
    WaitEventCount,
)

from conftest import BASE_TIME


def _snapshot(minutes, counters, marker="m1", epoch="e1", **kwargs):
    return Snapshot(
        captured_at=BASE_TIME + timedelta(minutes=minutes),
        counters=counters,
        structural_marker=marker,
        epoch=epoch,
        **kwargs,
    )


def _sample(minutes, waits=(), **kwargs):
    return Sample(
        captured_at=BASE_TIME + timedelta(minutes=minutes),
        wait_events=[
            WaitEventCount(category=c, event=e, state=s, count=n) for c, e, s, n in waits
        ],
        **kwargs,
    )


class TestComputeDelta:
    """Test delta semantics."""

    def test_counter_delta_and_checkpoint(self):
        start = _snapshot(0, {"a": 100})
        end = _snapshot(5, {"a": 151}, marker="m2", gauges={"autovacuum_workers": 3})

        delta = compute_delta(start, end)

        assert delta.get("a") == 51
        assert delta.checkpoint_occurred is True
        assert delta.elapsed_seconds == 300
        assert delta.gauges == {"autovacuum_workers": 3}
        assert not delta.counter_reset

    def test_same_marker_means_no_checkpoint(self):
        delta = compute_delta(_snapshot(0, {"a": 1}), _snapshot(5, {"a": 2}))
        assert delta.checkpoint_occurred is False

    def test_missing_marker_is_unknown(self):
        assert markers_differ(_snapshot(0, {}, marker=None), _snapshot(5, {})) is None

    def test_decreasing_counter_is_unknown(self):
        delta = compute_delta(_snapshot(0, {"a": 500, "b": 1}), _snapshot(5, {"a": 20, "b": 4}))

        assert delta.get("a") is None
        assert delta.get("b") == 3
        assert delta.counter_reset

    def test_epoch_change_makes_every_delta_unknown(self):
        delta = compute_delta(_snapshot(0, {"a": 1, "b": 1}), _snapshot(5, {"a": 9, "b": 9}, epoch="e2"))

        assert delta.counters == {"a": None, "b": None}
        assert delta.counter_reset

    def test_new_counter_is_unknown(self):
        delta = compute_delta(_snapshot(0, {}), _snapshot(5, {"wal_bytes": 10}))
        assert delta.counters == {"wal_bytes": None}
        assert not delta.counter_reset

    def test_structural_changes_from_samples(self):
        change = StructuralChange(
            locked_object_category="pg_class",
            approximate_kind="relation_ddl",
            detected_by=ChangeDetectionStrategy.LOCK_BASED,
        )
        samples = [_sample(2, structural_changes=[change])]

        delta = compute_delta(_snapshot(0, {}), _snapshot(5, {}), samples)

        assert delta.structural_change_detected
        assert delta.structural_changes == [change]


class TestTelemetryAnalysis:
    """Test queries over stored data."""

    @pytest.fixture
    def analysis(self, context, storage):
        return TelemetryAnalysis(context, storage)

    @pytest.mark.asyncio
    async def test_compare_uses_nearest_endpoints(self, analysis, storage):
        for minutes, value in ((0, 100), (5, 120), (10, 151)):
            await storage.append_snapshot(_snapshot(minutes, {"a": value}))

        delta = await analysis.compare(
            BASE_TIME + timedelta(minutes=1), BASE_TIME + timedelta(minutes=9)
        )

        assert delta.start_captured_at == BASE_TIME
        assert delta.end_captured_at == BASE_TIME + timedelta(minutes=10)
        assert delta.get("a") == 51

    @pytest.mark.asyncio
    async def test_compare_needs_two_snapshots(self, analysis, storage):
        assert await analysis.compare(BASE_TIME, BASE_TIME + timedelta(hours=1)) is None
        await storage.append_snapshot(_snapshot(0, {"a": 1}))
        assert await analysis.compare(BASE_TIME, BASE_TIME + timedelta(hours=1)) is None

    @pytest.mark.asyncio
    async def test_inverted_window_raises(self, analysis):
        with pytest.raises(InvalidWindowError):
            await analysis.compare(BASE_TIME + timedelta(hours=1), BASE_TIME)

    @pytest.mark.asyncio
    async def test_deltas_of_consecutive_pairs(self, analysis, storage):
        for minutes, value in ((0, 1), (5, 4), (10, 10)):
            await storage.append_snapshot(_snapshot(minutes, {"a": value}))

        deltas = await analysis.deltas(BASE_TIME, BASE_TIME + timedelta(minutes=10))

        assert [d.get("a") for d in deltas] == [3, 6]

    @pytest.mark.asyncio
    async def test_wait_summary_ranks_and_excludes_idle(self, analysis, storage):
        await storage.append_sample(
            _sample(0, [("Lock", "relation", "active", 4), ("Client", "ClientRead", "idle", 50)])
        )
        await storage.append_sample(
            _sample(1, [("Lock", "relation", "active", 2), ("IO", "DataFileRead", "active", 1)])
        )
        await storage.append_sample(_sample(2, [("IO", "DataFileRead", "active", 4)]))
        await storage.append_sample(_sample(3))

        rows = await analysis.wait_summary(BASE_TIME, BASE_TIME + timedelta(minutes=3))

        assert [(r.category, r.event) for r in rows] == [("Lock", "relation"), ("IO", "DataFileRead")]
        lock = rows[0]
        assert lock.total_waiters == 6
        assert lock.sample_count == 2
        assert lock.avg_waiters == 3.0
        assert lock.max_waiters == 4
        assert lock.pct_of_samples == 50.0

    @pytest.mark.asyncio
    async def test_wait_summary_tie_breaks_on_sample_count(self, analysis, storage):
        await storage.append_sample(_sample(0, [("A", "one", "active", 3), ("B", "two", "active", 1)]))
        await storage.append_sample(_sample(1, [("B", "two", "active", 2)]))

        rows = await analysis.wait_summary(BASE_TIME, BASE_TIME + timedelta(minutes=1))

        assert [r.category for r in rows] == ["B", "A"]

    @pytest.mark.asyncio
    async def test_table_compare(self, analysis, storage):
        before = TableStats(table_name="orders", size_bytes=8192, live_tuples=100, inserts=100)
        after = TableStats(
            table_name="orders",
            size_bytes=16384,
            live_tuples=150,
            dead_tuples=50,
            inserts=160,
            autovacuum_count=1,
            last_autovacuum=BASE_TIME + timedelta(minutes=3),
        )
        await storage.append_snapshot(_snapshot(0, {}, tables=[before]))
        await storage.append_snapshot(_snapshot(5, {}, tables=[after]))

        delta = await analysis.table_compare("public.orders", BASE_TIME, BASE_TIME + timedelta(minutes=5))

        assert delta.table == "public.orders"
        assert delta.size_delta_bytes == 8192
        assert delta.inserts_delta == 60
        assert delta.dead_tuple_ratio == 25.0
        assert delta.autovacuum_ran
        assert delta.autovacuum_count_delta == 1

    @pytest.mark.asyncio
    async def test_table_compare_untracked_table(self, analysis, storage):
        await storage.append_snapshot(_snapshot(0, {}))
        await storage.append_snapshot(_snapshot(5, {}))
        assert await analysis.table_compare("orders", BASE_TIME, BASE_TIME + timedelta(minutes=5)) is None

    @pytest.mark.asyncio
    async def test_activity_at(self, analysis, storage):
        await storage.append_sample(
            _sample(
                0,
                [("Lock", "transactionid", "active", 3), ("Client", "ClientRead", "idle", 9)],
                active_operations=[
                    ActiveOperation(unit_id=1, state="active", wait_event="transactionid"),
                    ActiveOperation(unit_id=2, state="idle in transaction"),
                ],
                lock_graph=[
                    LockEdge(blocked_unit=1, blocking_unit=2, blocked_duration_seconds=12.0),
                ],
                progress=[ProgressRecord(operation="vacuum", unit_id=3)],
            )
        )
        await storage.append_snapshot(_snapshot(0, {"a": 1}))
        await storage.append_snapshot(_snapshot(5, {"a": 2}, marker="m2", gauges={"autovacuum_workers": 2}))

        report = await analysis.activity_at(BASE_TIME + timedelta(minutes=4))

        assert report.sample_offset_seconds == 240
        assert report.active_units == 1
        assert report.waiting_units == 1
        assert report.idle_in_transaction == 1
        assert [w.event for w in report.top_wait_events] == ["transactionid"]
        assert report.blocked_units == 1
        assert report.longest_blocked_seconds == 12.0
        assert report.operations_running == {"vacuum": 1}
        assert report.snapshot_captured_at == BASE_TIME + timedelta(minutes=5)
        assert report.gauges == {"autovacuum_workers": 2}
        assert report.checkpoint_occurred is True

    @pytest.mark.asyncio
    async def test_recent_views(self, analysis, storage, clock):
        await storage.append_sample(
            _sample(
                -30,
                [("Lock", "relation", "active", 1), ("Client", "ClientRead", "idle", 9)],
                lock_graph=[LockEdge(blocked_unit=1, blocking_unit=2, blocked_duration_seconds=3)],
            )
        )
        await storage.append_sample(_sample(-300, [("IO", "DataFileRead", "active", 1)]))

        waits = await analysis.recent_waits()
        locks = await analysis.recent_locks()

        assert [w["event"] for w in waits] == ["relation"]
        assert waits[0]["captured_at"] == clock() - timedelta(minutes=30)
        assert locks[0]["blocking_unit"] == 2
        assert len(await analysis.recent_waits(timedelta(hours=6))) == 2

    @pytest.mark.asyncio
    async def test_recent_replication(self, analysis, storage, clock):
        await storage.append_snapshot(
            _snapshot(
                -20,
                {},
                replicas=[
                    ReplicaStats(unit_id=9, application="replica_b", replay_lag_bytes=0),
                    ReplicaStats(unit_id=8, application="replica_a", replay_lag_bytes=4096),
                ],
            )
        )
        await storage.append_snapshot(_snapshot(-180, {}, replicas=[ReplicaStats(unit_id=8)]))

        rows = await analysis.recent_replication()

        assert [r["application"] for r in rows] == ["replica_a", "replica_b"]
        assert rows[0]["replay_lag_bytes"] == 4096
        assert rows[0]["captured_at"] == clock() - timedelta(minutes=20)


def _statement(query_id, calls, total_ms, hit=0, read=0, **kwargs):
    return StatementStats(
        query_id=query_id,
        calls=calls,
        total_exec_time_ms=total_ms,
        shared_blks_hit=hit,
        shared_blks_read=read,
        **kwargs,
    )


class TestStatementCompare:
    """Test statement statistics deltas."""

    @pytest.fixture
    def analysis(self, context, storage):
        return TelemetryAnalysis(context, storage)

    def test_delta_of_one_statement(self):
        delta = statement_delta(
            _statement(1, 10, 100.0, hit=90, read=10, wal_bytes=1000.0),
            _statement(1, 30, 700.0, hit=180, read=20, wal_bytes=5000.0, mean_exec_time_ms=23.3),
        )

        assert delta.calls_delta == 20
        assert delta.total_exec_time_delta_ms == 600.0
        assert delta.time_per_call_ms == 30.0
        assert delta.hit_ratio_pct == 90.0
        assert delta.wal_bytes_delta == 4000.0
        assert delta.mean_exec_time_end_ms == 23.3

    def test_new_statement_counts_from_zero(self):
        delta = statement_delta(None, _statement(2, 4, 400.0))

        assert delta.calls_start == 0
        assert delta.calls_delta == 4
        assert delta.hit_ratio_pct is None
        assert delta.mean_exec_time_start_ms is None

    def test_reset_statement_counts_from_zero(self):
        delta = statement_delta(_statement(3, 500, 9000.0), _statement(3, 5, 250.0))

        assert delta.calls_start == 0
        assert delta.calls_delta == 5
        assert delta.total_exec_time_delta_ms == 250.0

    def test_no_calls_means_no_time_per_call(self):
        assert statement_delta(_statement(4, 5, 10.0), _statement(4, 5, 10.0)).time_per_call_ms is None

    @pytest.mark.asyncio
    async def test_ranked_filtered_and_limited(self, analysis, storage):
        await storage.append_snapshot(
            _snapshot(0, {}, statements=[_statement(1, 10, 100.0), _statement(2, 10, 100.0)])
        )
        await storage.append_snapshot(
            _snapshot(
                5,
                {},
                statements=[
                    _statement(1, 20, 400.0),
                    _statement(2, 20, 1100.0),
                    _statement(3, 2, 150.0),
                    _statement(4, 1, 50.0),
                ],
            )
        )
        end = BASE_TIME + timedelta(minutes=5)

        rows = await analysis.statement_compare(BASE_TIME, end)
        assert [(r.query_id, r.total_exec_time_delta_ms) for r in rows] == [
            (2, 1000.0),
            (1, 300.0),
            (3, 150.0),
        ]

        rows = await analysis.statement_compare(BASE_TIME, end, min_delta_ms=0, limit=2)
        assert [r.query_id for r in rows] == [2, 1]

    @pytest.mark.asyncio
    async def test_epoch_change_counts_from_zero(self, analysis, storage):
        await storage.append_snapshot(_snapshot(0, {}, statements=[_statement(1, 10, 100.0)]))
        await storage.append_snapshot(
            _snapshot(5, {}, epoch="e2", statements=[_statement(1, 12, 300.0)])
        )

        rows = await analysis.statement_compare(BASE_TIME, BASE_TIME + timedelta(minutes=5))

        assert rows[0].calls_delta == 12
        assert rows[0].total_exec_time_delta_ms == 300.0

    @pytest.mark.asyncio
    async def test_needs_two_snapshots(self, analysis, storage):
        await storage.append_snapshot(_snapshot(0, {}, statements=[_statement(1, 10, 900.0)]))
        assert await analysis.statement_compare(BASE_TIME, BASE_TIME + timedelta(minutes=5)) == []

    @pytest.mark.asyncio
    async def test_inverted_window_raises(self, analysis):
        with pytest.raises(InvalidWindowError):
            await analysis.statement_compare(BASE_TIME + timedelta(hours=1), BASE_TIME)
