"""
Anomaly/diagnostic engine.

A fixed table of independent rules, each looking at the window's Delta
and the samples inside it. Any number of rules may fire. Findings are
ranked by severity, then by rule order.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from pg_telemetry.analysis import TelemetryAnalysis
from pg_telemetry.schemas import Delta, Finding, Sample, Severity, SummaryLine
from pg_telemetry.storage.partitions import pretty_bytes

logger = logging.getLogger(__name__)

# Well-known counter names read from snapshots
CHECKPOINTS_REQUESTED = "checkpoints_requested"
CHECKPOINT_WRITE_TIME_MS = "checkpoint_write_time_ms"
CHECKPOINT_SYNC_TIME_MS = "checkpoint_sync_time_ms"
BUFFERS_BACKEND = "buffers_backend"
BUFFERS_BACKEND_FSYNC = "buffers_backend_fsync"
TEMP_FILES = "temp_files"
TEMP_BYTES = "temp_bytes"
WAL_BYTES = "wal_bytes"
BUFFERS_ALLOC = "buffers_alloc"

SEVERITY_RANK = {Severity.HIGH: 0, Severity.MEDIUM: 1, Severity.LOW: 2}

# Wait event prefixes and what they usually mean, first match wins
WAIT_INTERPRETATIONS = [
    ("Lock:", "Lock contention"),
    ("LWLock:Buffer", "Buffer contention"),
    ("LWLock:WAL", "WAL contention"),
    ("IO:", "I/O bound"),
]

Rule = Callable[[Delta, Sequence[Sample]], Optional[Finding]]


def _value(delta: Delta, name: str) -> float:
    return delta.get(name) or 0


def checkpoint_during_window(delta: Delta, samples: Sequence[Sample]) -> Optional[Finding]:
    if not delta.checkpoint_occurred:
        return None
    write_ms = _value(delta, CHECKPOINT_WRITE_TIME_MS)
    sync_ms = _value(delta, CHECKPOINT_SYNC_TIME_MS)
    if write_ms > 30000:
        severity = Severity.HIGH
    elif write_ms > 10000:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW
    return Finding(
        anomaly_type="CHECKPOINT_DURING_WINDOW",
        severity=severity,
        description="A checkpoint occurred during this time window",
        metric_value=f"write_time: {write_ms:.1f} ms, sync_time: {sync_ms:.1f} ms",
        threshold="Any checkpoint",
        recommendation="Consider increasing max_wal_size or scheduling heavy writes after checkpoint_timeout",
        evidence={CHECKPOINT_WRITE_TIME_MS: write_ms, CHECKPOINT_SYNC_TIME_MS: sync_ms},
    )


def forced_checkpoint(delta: Delta, samples: Sequence[Sample]) -> Optional[Finding]:
    requested = _value(delta, CHECKPOINTS_REQUESTED)
    if requested <= 0:
        return None
    return Finding(
        anomaly_type="FORCED_CHECKPOINT",
        severity=Severity.HIGH,
        description="WAL exceeded max_wal_size, forcing checkpoint",
        metric_value=f"{requested:.0f} forced checkpoints",
        threshold=f"{CHECKPOINTS_REQUESTED} delta > 0",
        recommendation="Increase max_wal_size to prevent mid-batch checkpoints",
        evidence={CHECKPOINTS_REQUESTED: requested},
    )


def buffer_pressure(delta: Delta, samples: Sequence[Sample]) -> Optional[Finding]:
    writes = _value(delta, BUFFERS_BACKEND)
    if writes <= 0:
        return None
    if writes > 1000:
        severity = Severity.HIGH
    elif writes > 100:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW
    return Finding(
        anomaly_type="BUFFER_PRESSURE",
        severity=severity,
        description="Backends forced to write buffers directly (shared_buffers exhaustion)",
        metric_value=f"{writes:.0f} backend buffer writes",
        threshold=f"{BUFFERS_BACKEND} delta > 0",
        recommendation="Increase shared_buffers, reduce concurrent writers, or use faster storage",
        evidence={BUFFERS_BACKEND: writes},
    )


def backend_fsync(delta: Delta, samples: Sequence[Sample]) -> Optional[Finding]:
    fsyncs = _value(delta, BUFFERS_BACKEND_FSYNC)
    if fsyncs <= 0:
        return None
    return Finding(
        anomaly_type="BACKEND_FSYNC",
        severity=Severity.HIGH,
        description="Backends forced to perform fsync (severe I/O bottleneck)",
        metric_value=f"{fsyncs:.0f} backend fsyncs",
        threshold=f"{BUFFERS_BACKEND_FSYNC} delta > 0",
        recommendation="Urgent: increase shared_buffers, reduce write load, or upgrade storage",
        evidence={BUFFERS_BACKEND_FSYNC: fsyncs},
    )


def temp_file_spills(delta: Delta, samples: Sequence[Sample]) -> Optional[Finding]:
    files = _value(delta, TEMP_FILES)
    if files <= 0:
        return None
    written = _value(delta, TEMP_BYTES)
    if written > 1073741824:
        severity = Severity.HIGH
    elif written > 104857600:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW
    return Finding(
        anomaly_type="TEMP_FILE_SPILLS",
        severity=severity,
        description="Queries spilling to temp files (work_mem exhaustion)",
        metric_value=f"{files:.0f} temp files, {pretty_bytes(written)} written",
        threshold=f"{TEMP_FILES} delta > 0",
        recommendation="Increase work_mem for affected sessions or globally",
        evidence={TEMP_FILES: files, TEMP_BYTES: written},
    )


def lock_contention(delta: Delta, samples: Sequence[Sample]) -> Optional[Finding]:
    edges = [edge for s in samples for edge in s.lock_graph]
    if not edges:
        return None
    blocked = len({edge.blocked_unit for edge in edges})
    longest = max(edge.blocked_duration_seconds for edge in edges)
    if longest > 30:
        severity = Severity.HIGH
    elif longest > 5:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW
    return Finding(
        anomaly_type="LOCK_CONTENTION",
        severity=severity,
        description="Lock contention detected",
        metric_value=f"{blocked} blocked units, max duration: {longest:.1f}s",
        threshold="Any lock contention",
        recommendation="Check recent_locks for blocking operations; consider shorter transactions",
        evidence={"blocked_units": float(blocked), "max_blocked_seconds": longest},
    )


def structural_change(delta: Delta, samples: Sequence[Sample]) -> Optional[Finding]:
    if not delta.structural_change_detected:
        return None
    kinds = sorted({c.approximate_kind for c in delta.structural_changes})
    return Finding(
        anomaly_type="STRUCTURAL_CHANGE",
        severity=Severity.MEDIUM,
        description="Structural (DDL) changes were in progress during this window",
        metric_value=f"{len(delta.structural_changes)} observations: {', '.join(kinds)}",
        threshold="Any exclusive lock on metadata objects",
        recommendation="Correlate with deployments or migrations; DDL can block concurrent work",
        evidence={"observations": float(len(delta.structural_changes))},
    )


def counter_reset(delta: Delta, samples: Sequence[Sample]) -> Optional[Finding]:
    if not delta.counter_reset:
        return None
    unknown = sorted(name for name, value in delta.counters.items() if value is None)
    return Finding(
        anomaly_type="COUNTER_RESET",
        severity=Severity.LOW,
        description="Cumulative counters were reset (restart or statistics reset); some deltas are unknown",
        metric_value=f"{len(unknown)} counters with unknown delta",
        threshold="Counter decreased or epoch changed",
        recommendation="Compare windows that do not span the reset",
        evidence={"unknown_counters": float(len(unknown))},
    )


RULES: List[Rule] = [
    checkpoint_during_window,
    forced_checkpoint,
    buffer_pressure,
    backend_fsync,
    temp_file_spills,
    lock_contention,
    structural_change,
    counter_reset,
]


def evaluate_rules(
    delta: Optional[Delta], samples: Sequence[Sample], rules: Optional[List[Rule]] = None
) -> List[Finding]:
    """
    Run every rule and rank the findings.

    Rules that need the Delta are skipped when it is None; sample-based
    rules still run against an empty Delta.
    """
    rules = RULES if rules is None else rules
    if delta is None and not samples:
        return []

    subject = delta
    if subject is None:
        changes = [c for s in samples for c in s.structural_changes]
        subject = Delta(
            start_captured_at=samples[0].captured_at,
            end_captured_at=samples[-1].captured_at,
            elapsed_seconds=0,
            structural_change_detected=bool(changes),
            structural_changes=changes,
        )

    findings = []
    for order, rule in enumerate(rules):
        try:
            finding = rule(subject, samples)
        except Exception as e:
            logger.error(f"Anomaly rule {rule.__name__} failed: {e}")
            continue
        if finding is not None:
            findings.append((SEVERITY_RANK[finding.severity], order, finding))
    findings.sort(key=lambda item: (item[0], item[1]))
    return [finding for _, _, finding in findings]


class AnomalyEngine:
    """Findings for a window, from stored data only."""

    def __init__(self, analysis: TelemetryAnalysis, rules: Optional[List[Rule]] = None):
        self.analysis = analysis
        self.rules = list(RULES if rules is None else rules)

    async def report(self, start: datetime, end: datetime) -> List[Finding]:
        delta = await self.analysis.compare(start, end)
        samples = await self.analysis.storage.samples_between(start, end)
        findings = evaluate_rules(delta, samples, self.rules)
        logger.debug(f"Anomaly report {start.isoformat()} - {end.isoformat()}: {len(findings)} findings")
        return findings

    async def summary_report(self, start: datetime, end: datetime) -> List[SummaryLine]:
        """
        Human-oriented digest of a window, one line per metric.

        Sections: OVERVIEW, CHECKPOINT & WAL, BUFFERS & I/O, WAIT EVENTS
        (top five) and LOCK CONTENTION.
        """
        delta = await self.analysis.compare(start, end)
        storage = self.analysis.storage
        samples = await storage.samples_between(start, end)
        snapshots = await storage.snapshots_between(start, end)
        findings = evaluate_rules(delta, samples, self.rules)
        waits = await self.analysis.wait_summary(start, end)

        lines: List[SummaryLine] = []

        def add(section: str, metric: str, value: str, interpretation: str) -> None:
            lines.append(
                SummaryLine(section=section, metric=metric, value=value, interpretation=interpretation)
            )

        elapsed = delta.elapsed_seconds if delta else 0.0
        add(
            "OVERVIEW",
            "Time Window",
            f"{start.isoformat()} to {end.isoformat()}",
            f"{elapsed:.1f} seconds elapsed",
        )
        add(
            "OVERVIEW",
            "Data Coverage",
            f"{len(snapshots)} snapshots, {len(samples)} samples",
            "WARNING: No sample data in window" if not samples else "OK",
        )
        if not findings:
            verdict = "No issues detected"
        elif len(findings) <= 2:
            verdict = "Minor issues"
        else:
            verdict = "Multiple issues - review the anomaly report"
        add("OVERVIEW", "Anomalies Detected", str(len(findings)), verdict)

        checkpoint = delta.checkpoint_occurred if delta else None
        add(
            "CHECKPOINT & WAL",
            "Checkpoint Occurred",
            "unknown" if checkpoint is None else str(checkpoint).lower(),
            f"Checkpoint write: {_value(delta, CHECKPOINT_WRITE_TIME_MS):.1f} ms"
            if checkpoint
            else "No checkpoint during window",
        )
        wal = delta.get(WAL_BYTES) if delta else None
        rate = f"{(wal or 0) / 1048576.0 / elapsed:.2f} MB/sec" if elapsed else "N/A"
        add("CHECKPOINT & WAL", "WAL Generated", pretty_bytes(wal) if wal is not None else "N/A", rate)

        allocated = delta.get(BUFFERS_ALLOC) if delta else None
        add(
            "BUFFERS & I/O",
            "Buffers Allocated",
            _count(allocated),
            "New buffer allocations",
        )
        backend_writes = delta.get(BUFFERS_BACKEND) if delta else None
        add(
            "BUFFERS & I/O",
            "Backend Buffer Writes",
            _count(backend_writes),
            "WARNING: Backends writing directly" if (backend_writes or 0) > 0 else "OK",
        )
        temp_files = (delta.get(TEMP_FILES) if delta else None) or 0
        temp_bytes = (delta.get(TEMP_BYTES) if delta else None) or 0
        add(
            "BUFFERS & I/O",
            "Temp File Spills",
            f"{temp_files:.0f} files, {pretty_bytes(temp_bytes)}",
            "Consider increasing work_mem" if temp_files > 0 else "No temp file usage",
        )

        for row in waits[:5]:
            name = f"{row.category}:{row.event}"
            add(
                "WAIT EVENTS",
                name,
                f"{row.total_waiters} total waiters ({row.pct_of_samples}% of samples)",
                interpret_wait(name),
            )

        edges = [edge for s in samples for edge in s.lock_graph]
        blocked = len({edge.blocked_unit for edge in edges})
        add(
            "LOCK CONTENTION",
            "Blocked Sessions",
            str(blocked),
            f"Max blocked duration: {max(e.blocked_duration_seconds for e in edges):.1f}s"
            if edges
            else "No lock contention",
        )
        return lines


def interpret_wait(name: str) -> str:
    """Short reading of a ``category:event`` wait name."""
    if name == "Running:CPU":
        return "CPU active (normal)"
    for prefix, meaning in WAIT_INTERPRETATIONS:
        if name.startswith(prefix):
            return meaning
    return "Review PostgreSQL docs"


def _count(value: Optional[float]) -> str:
    return "N/A" if value is None else f"{value:.0f}"
