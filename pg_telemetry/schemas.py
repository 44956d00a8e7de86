"""
Type-safe telemetry schemas.

These schemas define the complete data model for the collector: what is
captured (samples, snapshots), how collection is book-kept (collection
runs, mode state) and what the query side returns (deltas, findings,
health reports).
"""

from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict
from enum import Enum


# ============================================================================
# ENUMS - No magic strings
# ============================================================================


class TelemetryMode(str, Enum):
    """Rungs of the mode ladder, cheapest last."""

    NORMAL = "normal"
    LIGHT = "light"
    EMERGENCY = "emergency"


class TaskName(str, Enum):
    """Tasks driven by the scheduler."""

    SAMPLE = "sample"
    SNAPSHOT = "snapshot"
    CLEANUP = "cleanup"
    PARTITIONS = "partitions"


class RunStatus(str, Enum):
    """Final status of a collection run."""

    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    TIMEOUT = "timeout"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABANDONED = "abandoned"


class SkipReason(str, Enum):
    """Why a whole run was not executed."""

    DUPLICATE_RUN = "duplicate_run"
    CIRCUIT_BREAKER = "circuit_breaker"
    DISABLED = "disabled"
    STORAGE_DISABLED = "storage_disabled"


class StepStatus(str, Enum):
    """Outcome of one sub-collection inside a run."""

    OK = "ok"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"
    DISABLED = "disabled"


class Severity(str, Enum):
    """Finding severity bands."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ChangeDetectionStrategy(str, Enum):
    """How structural changes are detected."""

    LOCK_BASED = "lock_based"
    PATTERN_BASED = "pattern_based"


class GovernorAction(str, Enum):
    """What the storage size governor did on its last check."""

    NONE = "none"
    PROACTIVE_CLEANUP = "proactive_cleanup"
    AGGRESSIVE_CLEANUP = "aggressive_cleanup"
    DISABLED = "disabled"
    STILL_DISABLED = "still_disabled"
    RE_ENABLED = "re_enabled"


# ============================================================================
# SAMPLE - point-in-time capture
# ============================================================================


class WaitEventCount(BaseModel):
    """Number of units waiting on one (category, event, state) triple."""

    category: str = Field(min_length=1, description="Wait event category, e.g. Lock, IO")
    event: str = Field(min_length=1, description="Wait event name")
    state: str = Field(default="unknown", description="Unit state, e.g. active, idle")
    count: int = Field(ge=0)


class ActiveOperation(BaseModel):
    """One non-idle operation running on the observed system."""

    unit_id: int
    user: Optional[str] = None
    application: Optional[str] = None
    state: Optional[str] = None
    wait_category: Optional[str] = None
    wait_event: Optional[str] = None
    started_at: Optional[datetime] = None
    state_changed_at: Optional[datetime] = None
    text_preview: Optional[str] = None


class LockEdge(BaseModel):
    """A blocked unit waiting on a blocking unit."""

    blocked_unit: int
    blocking_unit: int
    blocked_duration_seconds: float = Field(ge=0)
    lock_type: Optional[str] = None
    locked_object: Optional[str] = None
    blocked_preview: Optional[str] = None
    blocking_preview: Optional[str] = None


class ProgressRecord(BaseModel):
    """Progress of a long-running operation (vacuum, copy, index build...)."""

    operation: str = Field(min_length=1)
    unit_id: int
    target: Optional[str] = None
    phase: Optional[str] = None
    blocks_total: Optional[int] = None
    blocks_done: Optional[int] = None
    tuples_total: Optional[int] = None
    tuples_done: Optional[int] = None
    bytes_total: Optional[int] = None
    bytes_done: Optional[int] = None


class StructuralChange(BaseModel):
    """A structural mutation observed in progress."""

    locked_object_category: str = Field(min_length=1)
    approximate_kind: str = Field(description="Coarse kind of mutation, e.g. table_ddl")
    detected_by: ChangeDetectionStrategy
    evidence: Optional[str] = None


class Sample(BaseModel):
    """Immutable point-in-time capture written by the Sampler."""

    model_config = ConfigDict(frozen=True)

    captured_at: datetime
    mode: TelemetryMode = TelemetryMode.NORMAL
    wait_events: List[WaitEventCount] = Field(default_factory=list)
    active_operations: List[ActiveOperation] = Field(default_factory=list)
    lock_graph: List[LockEdge] = Field(default_factory=list)
    progress: List[ProgressRecord] = Field(default_factory=list)
    structural_changes: List[StructuralChange] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(
        default_factory=dict, description="Sub-collection name -> reason it was not captured"
    )


# ============================================================================
# SNAPSHOT - cumulative counters
# ============================================================================


class CounterReading(BaseModel):
    """Raw cumulative-counter read from the observed system."""

    counters: Dict[str, float] = Field(default_factory=dict)
    gauges: Dict[str, float] = Field(
        default_factory=dict, description="Point-in-time fields that pass through deltas"
    )
    structural_marker: Optional[str] = Field(
        None, description="Changes whenever a checkpoint-like event happened"
    )
    epoch: Optional[str] = Field(
        None, description="Identifies the platform lifetime; changes on restart/stats reset"
    )


class TableStats(BaseModel):
    """Cumulative statistics for one tracked table."""

    schema_name: str = "public"
    table_name: str = Field(min_length=1)
    size_bytes: int = Field(default=0, ge=0)
    total_size_bytes: int = Field(default=0, ge=0)
    live_tuples: int = Field(default=0, ge=0)
    dead_tuples: int = Field(default=0, ge=0)
    inserts: int = Field(default=0, ge=0)
    updates: int = Field(default=0, ge=0)
    deletes: int = Field(default=0, ge=0)
    hot_updates: int = Field(default=0, ge=0)
    autovacuum_count: int = Field(default=0, ge=0)
    autoanalyze_count: int = Field(default=0, ge=0)
    last_autovacuum: Optional[datetime] = None
    last_autoanalyze: Optional[datetime] = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"


class StatementStats(BaseModel):
    """Cumulative statistics for one normalized statement."""

    query_id: int
    user_id: Optional[int] = None
    query_preview: Optional[str] = None
    calls: int = Field(default=0, ge=0)
    total_exec_time_ms: float = Field(default=0.0, ge=0)
    mean_exec_time_ms: Optional[float] = None
    rows: int = Field(default=0, ge=0)
    shared_blks_hit: int = Field(default=0, ge=0)
    shared_blks_read: int = Field(default=0, ge=0)
    shared_blks_written: int = Field(default=0, ge=0)
    temp_blks_read: int = Field(default=0, ge=0)
    temp_blks_written: int = Field(default=0, ge=0)
    wal_bytes: Optional[float] = None


class ReplicaStats(BaseModel):
    """One connected replica as seen by the primary."""

    unit_id: int
    client_addr: Optional[str] = None
    application: Optional[str] = None
    state: Optional[str] = None
    sync_state: Optional[str] = None
    sent_lsn: Optional[str] = None
    write_lsn: Optional[str] = None
    flush_lsn: Optional[str] = None
    replay_lsn: Optional[str] = None
    replay_lag_bytes: Optional[int] = None
    write_lag_seconds: Optional[float] = None
    flush_lag_seconds: Optional[float] = None
    replay_lag_seconds: Optional[float] = None


class Snapshot(BaseModel):
    """Immutable cumulative-counter capture written by the Snapshotter."""

    model_config = ConfigDict(frozen=True)

    captured_at: datetime
    counters: Dict[str, float] = Field(default_factory=dict)
    gauges: Dict[str, float] = Field(default_factory=dict)
    structural_marker: Optional[str] = None
    epoch: Optional[str] = None
    tables: List[TableStats] = Field(default_factory=list)
    statements: List[StatementStats] = Field(default_factory=list)
    replicas: List[ReplicaStats] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict)


class Delta(BaseModel):
    """Difference between two chronologically ordered snapshots (derived, never stored)."""

    start_captured_at: datetime
    end_captured_at: datetime
    elapsed_seconds: float = Field(ge=0)
    checkpoint_occurred: Optional[bool] = Field(
        None, description="None when either snapshot lacks a structural marker"
    )
    counter_reset: bool = False
    counters: Dict[str, Optional[float]] = Field(
        default_factory=dict, description="Counter deltas; None means unknown (reset detected)"
    )
    gauges: Dict[str, float] = Field(default_factory=dict)
    structural_change_detected: bool = False
    structural_changes: List[StructuralChange] = Field(default_factory=list)

    def get(self, name: str) -> Optional[float]:
        """Delta for one counter, None when unknown or absent."""
        return self.counters.get(name)


class TableDelta(BaseModel):
    """Change of one tracked table between two snapshots."""

    table: str
    start_captured_at: datetime
    end_captured_at: datetime
    elapsed_seconds: float
    size_start_bytes: int
    size_end_bytes: int
    size_delta_bytes: int
    total_size_delta_bytes: int
    live_tuples_start: int
    live_tuples_end: int
    dead_tuples_end: int
    dead_tuple_ratio: Optional[float] = None
    inserts_delta: Optional[int] = None
    updates_delta: Optional[int] = None
    deletes_delta: Optional[int] = None
    hot_updates_delta: Optional[int] = None
    autovacuum_ran: bool = False
    autoanalyze_ran: bool = False
    autovacuum_count_delta: Optional[int] = None
    autoanalyze_count_delta: Optional[int] = None


class StatementDelta(BaseModel):
    """Change of one statement's statistics between two snapshots."""

    query_id: int
    query_preview: Optional[str] = None
    calls_start: int = 0
    calls_end: int
    calls_delta: int
    total_exec_time_start_ms: float = 0.0
    total_exec_time_end_ms: float
    total_exec_time_delta_ms: float
    mean_exec_time_start_ms: Optional[float] = None
    mean_exec_time_end_ms: Optional[float] = None
    rows_delta: int = 0
    shared_blks_hit_delta: int = 0
    shared_blks_read_delta: int = 0
    shared_blks_written_delta: int = 0
    temp_blks_read_delta: int = 0
    temp_blks_written_delta: int = 0
    wal_bytes_delta: Optional[float] = None
    hit_ratio_pct: Optional[float] = None
    time_per_call_ms: Optional[float] = None


# ============================================================================
# BOOKKEEPING - collection runs, mode state
# ============================================================================


class StepResult(BaseModel):
    """Outcome of one sub-collection of a run."""

    name: str
    status: StepStatus
    detail: Optional[str] = None
    duration_ms: int = Field(default=0, ge=0)


class CollectionRun(BaseModel):
    """Bookkeeping row per invocation of a scheduled task."""

    run_id: str = Field(min_length=1)
    task: str = Field(min_length=1)
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = Field(None, ge=0)
    status: RunStatus = RunStatus.RUNNING
    success: bool = False
    skip_reason: Optional[SkipReason] = None
    steps: List[StepResult] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def in_flight(self) -> bool:
        return self.completed_at is None

    @property
    def executed(self) -> bool:
        """True for runs that actually touched the observed system."""
        return self.completed_at is not None and self.status not in (
            RunStatus.SKIPPED,
            RunStatus.ABANDONED,
        )

    @property
    def duration_seconds(self) -> float:
        return (self.duration_ms or 0) / 1000.0


class RunOutcome(BaseModel):
    """What a task reports back to the scheduler."""

    status: RunStatus
    skip_reason: Optional[SkipReason] = None
    steps: List[StepResult] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (RunStatus.SUCCESS, RunStatus.PARTIAL)


class ModeTransition(BaseModel):
    """One recorded move on the mode ladder."""

    from_mode: TelemetryMode
    to_mode: TelemetryMode
    at: datetime
    cause: str


class ModeState(BaseModel):
    """Process-wide mode state, mutated only by the mode controller."""

    current: TelemetryMode = TelemetryMode.NORMAL
    last_transition_at: Optional[datetime] = None
    consecutive_trip_count: int = Field(default=0, ge=0)
    last_trip_at: Optional[datetime] = None
    history: List[ModeTransition] = Field(default_factory=list)


class ModeProfile(BaseModel):
    """What each rung of the ladder collects and how often."""

    mode: TelemetryMode
    sample_interval_seconds: float = Field(gt=0)
    activity_enabled: bool
    progress_enabled: bool
    locks_enabled: bool
    changes_enabled: bool
    description: str


# ============================================================================
# STORAGE
# ============================================================================


class PartitionInfo(BaseModel):
    """A time-bounded storage unit."""

    name: str
    start: datetime
    end: datetime
    samples: int = 0
    snapshots: int = 0
    size_bytes: int = 0


class CleanupResult(BaseModel):
    """Result of one retention pass."""

    cutoff: datetime
    retention_days: float
    dropped_partitions: List[str] = Field(default_factory=list)
    dropped_samples: int = 0
    dropped_snapshots: int = 0
    dropped_runs: int = 0


class GovernorStatus(BaseModel):
    """State of the storage size governor."""

    size_bytes: int = 0
    warn_bytes: int
    critical_bytes: int
    recover_bytes: int
    disabled: bool = False
    disabled_at: Optional[datetime] = None
    last_action: GovernorAction = GovernorAction.NONE
    action_taken: Optional[str] = None
    last_checked_at: Optional[datetime] = None


# ============================================================================
# QUERY RESULTS
# ============================================================================


class WaitSummaryRow(BaseModel):
    """Aggregated wait event over a window."""

    category: str
    event: str
    sample_count: int
    total_waiters: int
    avg_waiters: float
    max_waiters: int
    pct_of_samples: Optional[float] = None


class Finding(BaseModel):
    """One anomaly flagged by the diagnostic engine."""

    anomaly_type: str
    severity: Severity
    description: str
    metric_value: str
    threshold: str
    recommendation: str
    evidence: Dict[str, float] = Field(default_factory=dict)


class SummaryLine(BaseModel):
    """One line of the diagnostic summary report."""

    section: str
    metric: str
    value: str
    interpretation: str


class ActivityAt(BaseModel):
    """What was happening around a given moment."""

    requested_at: datetime
    sample_captured_at: Optional[datetime] = None
    sample_offset_seconds: Optional[float] = None
    active_units: int = 0
    waiting_units: int = 0
    idle_in_transaction: int = 0
    top_wait_events: List[WaitSummaryRow] = Field(default_factory=list)
    blocked_units: int = 0
    longest_blocked_seconds: Optional[float] = None
    operations_running: Dict[str, int] = Field(default_factory=dict)
    structural_changes: List[StructuralChange] = Field(default_factory=list)
    snapshot_captured_at: Optional[datetime] = None
    snapshot_offset_seconds: Optional[float] = None
    gauges: Dict[str, float] = Field(default_factory=dict)
    checkpoint_occurred: Optional[bool] = None


class ComponentHealth(BaseModel):
    """Status of one component in a health check."""

    name: str
    healthy: bool
    detail: Dict[str, Optional[str]] = Field(default_factory=dict)


class HealthReport(BaseModel):
    """Per-component status returned by health_check()."""

    checked_at: datetime
    enabled: bool = Field(description="Effective: collection will run on the next tick")
    admin_enabled: bool
    disabled: bool
    mode: TelemetryMode
    recent_trip_count: int
    storage: GovernorStatus
    last_sample_at: Optional[datetime] = None
    last_snapshot_at: Optional[datetime] = None
    data_fresh: bool = False
    components: List[ComponentHealth] = Field(default_factory=list)
