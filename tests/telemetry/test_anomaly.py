"""
Unit tests for the anomaly engine.
"""

import pytest
from datetime import timedelta

from pg_telemetry.analysis import TelemetryAnalysis
from pg_telemetry.anomaly import (
    AnomalyEngine,
    buffer_pressure,
    checkpoint_during_window,
    evaluate_rules,
    interpret_wait,
    temp_file_spills,
)
from pg_telemetry.schemas import Delta, LockEdge, Sample, Severity, Snapshot, WaitEventCount

from conftest import BASE_TIME


def _delta(counters=None, **kwargs):
    return Delta(
        start_captured_at=BASE_TIME,
        end_captured_at=BASE_TIME + timedelta(minutes=5),
        elapsed_seconds=300,
        counters=counters or {},
        **kwargs,
    )


class TestRules:
    """Test individual rules."""

    def test_checkpoint_severity_follows_write_time(self):
        quiet = checkpoint_during_window(_delta({"checkpoint_write_time_ms": 500}, checkpoint_occurred=True), [])
        heavy = checkpoint_during_window(_delta({"checkpoint_write_time_ms": 45000}, checkpoint_occurred=True), [])

        assert quiet.severity == Severity.LOW
        assert heavy.severity == Severity.HIGH
        assert checkpoint_during_window(_delta(checkpoint_occurred=False), []) is None

    def test_buffer_pressure_bands(self):
        assert buffer_pressure(_delta({"buffers_backend": 0}), []) is None
        assert buffer_pressure(_delta({"buffers_backend": 50}), []).severity == Severity.LOW
        assert buffer_pressure(_delta({"buffers_backend": 500}), []).severity == Severity.MEDIUM
        assert buffer_pressure(_delta({"buffers_backend": 5000}), []).severity == Severity.HIGH

    def test_unknown_counter_does_not_fire(self):
        assert buffer_pressure(_delta({"buffers_backend": None}, counter_reset=True), []) is None

    def test_temp_spills_report_bytes(self):
        finding = temp_file_spills(_delta({"temp_files": 3, "temp_bytes": 200 * 1048576}), [])
        assert finding.severity == Severity.MEDIUM
        assert finding.metric_value == "3 temp files, 200.00 MB written"


class TestEvaluateRules:
    """Test ranking and fallbacks."""

    def test_findings_ranked_by_severity_then_rule_order(self):
        delta = _delta(
            {"buffers_backend": 50, "checkpoints_requested": 2, "buffers_backend_fsync": 1},
            counter_reset=True,
        )

        findings = evaluate_rules(delta, [])

        assert [f.anomaly_type for f in findings] == [
            "FORCED_CHECKPOINT",
            "BACKEND_FSYNC",
            "BUFFER_PRESSURE",
            "COUNTER_RESET",
        ]

    def test_sample_rules_run_without_delta(self):
        samples = [
            Sample(
                captured_at=BASE_TIME,
                lock_graph=[LockEdge(blocked_unit=1, blocking_unit=2, blocked_duration_seconds=45)],
            )
        ]

        findings = evaluate_rules(None, samples)

        assert [f.anomaly_type for f in findings] == ["LOCK_CONTENTION"]
        assert findings[0].severity == Severity.HIGH

    def test_nothing_to_evaluate(self):
        assert evaluate_rules(None, []) == []

    def test_failing_rule_is_skipped(self):
        def broken(delta, samples):
            raise KeyError("missing")

        findings = evaluate_rules(_delta({"checkpoints_requested": 1}), [], [broken])
        assert findings == []


class TestAnomalyEngine:
    """Test reports from stored data."""

    @pytest.mark.asyncio
    async def test_report_for_window(self, context, storage):
        await storage.append_snapshot(
            Snapshot(captured_at=BASE_TIME, counters={"checkpoints_requested": 4}, structural_marker="a")
        )
        await storage.append_snapshot(
            Snapshot(
                captured_at=BASE_TIME + timedelta(minutes=5),
                counters={"checkpoints_requested": 5},
                structural_marker="b",
            )
        )
        engine = AnomalyEngine(TelemetryAnalysis(context, storage))

        findings = await engine.report(BASE_TIME, BASE_TIME + timedelta(minutes=5))

        assert [f.anomaly_type for f in findings] == ["FORCED_CHECKPOINT", "CHECKPOINT_DURING_WINDOW"]


class TestSummaryReport:
    """Test the diagnostic summary."""

    @pytest.fixture
    def engine(self, context, storage):
        return AnomalyEngine(TelemetryAnalysis(context, storage))

    @staticmethod
    def _lines(report):
        return {(line.section, line.metric): line for line in report}

    @pytest.mark.asyncio
    async def test_summary_of_busy_window(self, engine, storage):
        await storage.append_snapshot(
            Snapshot(
                captured_at=BASE_TIME,
                counters={"wal_bytes": 0, "buffers_backend": 10, "temp_files": 0, "temp_bytes": 0},
                structural_marker="a",
            )
        )
        await storage.append_snapshot(
            Snapshot(
                captured_at=BASE_TIME + timedelta(minutes=5),
                counters={
                    "wal_bytes": 314572800,
                    "buffers_backend": 60,
                    "temp_files": 2,
                    "temp_bytes": 2048,
                    "checkpoint_write_time_ms": 1500,
                },
                structural_marker="b",
            )
        )
        await storage.append_sample(
            Sample(
                captured_at=BASE_TIME + timedelta(minutes=2),
                wait_events=[
                    WaitEventCount(category="Lock", event="relation", state="active", count=4),
                    WaitEventCount(category="Running", event="CPU", state="active", count=2),
                ],
                lock_graph=[LockEdge(blocked_unit=1, blocking_unit=2, blocked_duration_seconds=12.5)],
            )
        )

        report = await engine.summary_report(BASE_TIME, BASE_TIME + timedelta(minutes=5))
        lines = self._lines(report)

        assert report[0].metric == "Time Window"
        assert lines[("OVERVIEW", "Time Window")].interpretation == "300.0 seconds elapsed"
        assert lines[("OVERVIEW", "Data Coverage")].value == "2 snapshots, 1 samples"
        assert lines[("OVERVIEW", "Anomalies Detected")].interpretation == (
            "Multiple issues - review the anomaly report"
        )
        assert lines[("CHECKPOINT & WAL", "Checkpoint Occurred")].value == "true"
        assert lines[("CHECKPOINT & WAL", "WAL Generated")].value == "300.00 MB"
        assert lines[("CHECKPOINT & WAL", "WAL Generated")].interpretation == "1.00 MB/sec"
        assert lines[("BUFFERS & I/O", "Buffers Allocated")].value == "N/A"
        assert lines[("BUFFERS & I/O", "Backend Buffer Writes")].value == "50"
        assert lines[("BUFFERS & I/O", "Temp File Spills")].value == "2 files, 2.00 KB"
        assert lines[("WAIT EVENTS", "Lock:relation")].interpretation == "Lock contention"
        assert lines[("WAIT EVENTS", "Running:CPU")].interpretation == "CPU active (normal)"
        blocked = lines[("LOCK CONTENTION", "Blocked Sessions")]
        assert blocked.value == "1"
        assert blocked.interpretation == "Max blocked duration: 12.5s"

    @pytest.mark.asyncio
    async def test_summary_without_data(self, engine):
        report = await engine.summary_report(BASE_TIME, BASE_TIME + timedelta(minutes=5))
        lines = self._lines(report)

        assert lines[("OVERVIEW", "Data Coverage")].interpretation == "WARNING: No sample data in window"
        assert lines[("OVERVIEW", "Anomalies Detected")].interpretation == "No issues detected"
        assert lines[("CHECKPOINT & WAL", "Checkpoint Occurred")].value == "unknown"
        assert lines[("CHECKPOINT & WAL", "WAL Generated")].interpretation == "N/A"
        assert lines[("LOCK CONTENTION", "Blocked Sessions")].interpretation == "No lock contention"
        assert not any(line.section == "WAIT EVENTS" for line in report)

    def test_wait_interpretation(self):
        assert interpret_wait("LWLock:BufferContent") == "Buffer contention"
        assert interpret_wait("LWLock:WALWrite") == "WAL contention"
        assert interpret_wait("IO:DataFileRead") == "I/O bound"
        assert interpret_wait("Client:ClientRead") == "Review PostgreSQL docs"
