"""
Telemetry service: wiring and the operator surface.

This service owns one instance of every component, registers the
scheduled tasks and exposes the operations operators and dashboards
call: comparisons, summaries, findings, mode control, the administrative
kill switch, manual cleanup and the health check.
"""

import asyncio
import logging
import signal
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pg_telemetry.admission import AdmissionGuard
from pg_telemetry.analysis import TelemetryAnalysis
from pg_telemetry.anomaly import AnomalyEngine
from pg_telemetry.breaker import CircuitBreaker
from pg_telemetry.change_detector import ChangeDetector
from pg_telemetry.collectors import MaintenanceTasks, Sampler, Snapshotter
from pg_telemetry.config import ConfigStore
from pg_telemetry.context import Clock, TelemetryContext
from pg_telemetry.exceptions import ConfigurationError, TelemetryError
from pg_telemetry.modes import ModeController, parse_mode, profile_for
from pg_telemetry.protocols import ObservedSystem, TelemetryStorage
from pg_telemetry.scheduler import Scheduler
from pg_telemetry.schemas import (
    ActivityAt,
    CleanupResult,
    CollectionRun,
    ComponentHealth,
    Delta,
    Finding,
    HealthReport,
    ModeProfile,
    ModeState,
    StatementDelta,
    SummaryLine,
    TableDelta,
    TaskName,
    TelemetryMode,
    WaitSummaryRow,
)
from pg_telemetry.storage import MemoryStorageBackend, SizeGovernor
from pg_telemetry.storage.partitions import as_utc

logger = logging.getLogger(__name__)

# Hard limit of one maintenance tick
MAINTENANCE_TIMEOUT_SECONDS = 300.0


class TelemetryService:
    """
    Main telemetry service that manages continuous collection.

    This service:
    - Wires the collectors, guards and controllers around one context
    - Runs the scheduler (sample, snapshot, cleanup, partitions)
    - Answers queries from stored data
    """

    def __init__(
        self,
        observed: ObservedSystem,
        storage: Optional[TelemetryStorage] = None,
        config: Optional[ConfigStore] = None,
        clock: Optional[Clock] = None,
        context: Optional[TelemetryContext] = None,
    ):
        """
        Initialize telemetry service.

        Args:
            observed: System being observed
            storage: Storage backend (in-memory when omitted)
            config: Configuration store (defaults when omitted)
            clock: Clock returning aware UTC datetimes
            context: Pre-built context, overrides ``config`` and ``clock``

        Raises:
            UnsupportedEnvironmentError: Lock-based change detection was
                configured for a system that cannot report locks
        """
        self.context = context or TelemetryContext(config=config, clock=clock)
        self.observed = observed
        self.storage: TelemetryStorage = storage if storage is not None else MemoryStorageBackend()

        self.modes = ModeController(self.context)
        self.breaker = CircuitBreaker(self.context, self.storage)
        self.guard = AdmissionGuard(self.context)
        self.governor = SizeGovernor(self.context, self.storage, observed)
        self.detector = ChangeDetector(self.context, observed)
        self.detector.strategy()

        shared = dict(
            context=self.context,
            observed=observed,
            storage=self.storage,
            governor=self.governor,
            breaker=self.breaker,
            modes=self.modes,
        )
        self.sampler = Sampler(guard=self.guard, detector=self.detector, **shared)
        self.snapshotter = Snapshotter(**shared)
        self.maintenance = MaintenanceTasks(self.context, self.storage)
        self.analysis = TelemetryAnalysis(self.context, self.storage)
        self.anomalies = AnomalyEngine(self.analysis)

        self.scheduler = Scheduler(self.context, self.storage)
        self.scheduler.register(
            TaskName.PARTITIONS.value,
            self.maintenance.execute_partitions,
            self.maintenance.partition_interval,
            timeout=lambda: MAINTENANCE_TIMEOUT_SECONDS,
        )
        self.scheduler.register(
            TaskName.SAMPLE.value, self.sampler.execute, self.sampler.interval
        )
        self.scheduler.register(
            TaskName.SNAPSHOT.value, self.snapshotter.execute, self.snapshotter.interval
        )
        self.scheduler.register(
            TaskName.CLEANUP.value,
            self.maintenance.execute_cleanup,
            self.maintenance.cleanup_interval,
            timeout=lambda: MAINTENANCE_TIMEOUT_SECONDS,
        )

        self._initialized = False
        self._running = False
        # Created in start(), on the loop that runs the service
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def config(self) -> ConfigStore:
        return self.context.config

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Connect backends that need it and create the first partitions."""
        if self._initialized:
            return
        logger.info("Initializing telemetry service")
        for component in (self.storage, self.observed):
            connect = getattr(component, "connect", None)
            if connect is not None:
                await connect()
        await self.maintenance.ensure_partitions()
        self._initialized = True

        settings = self.context.settings()
        logger.info(
            f"Telemetry service initialized (mode={self.modes.current().value}, "
            f"enabled={settings.enabled}, change_detection={self.detector.strategy().kind.value})"
        )

    async def start(self) -> None:
        """Start scheduled collection. Returns once the loops are running."""
        if self._running:
            logger.warning("Telemetry service already running")
            return
        await self.initialize()
        await self.scheduler.start()
        self._running = True
        self._shutdown_event = asyncio.Event()
        logger.info("Telemetry service started")

    async def stop(self) -> None:
        """Stop scheduled collection and disconnect backends."""
        if not self._running:
            return
        logger.info("Stopping telemetry service")
        await self.scheduler.stop()
        for component in (self.storage, self.observed):
            disconnect = getattr(component, "disconnect", None)
            if disconnect is not None:
                try:
                    await disconnect()
                except Exception as e:
                    logger.error(f"Error disconnecting {component.__class__.__name__}: {e}")
        self._running = False
        self._initialized = False
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        logger.info("Telemetry service stopped")

    async def run_until_shutdown(self) -> None:
        """Start, then block until SIGTERM/SIGINT or ``stop()``."""
        await self.start()
        self._register_signal_handlers()
        await self._shutdown_event.wait()

    def _register_signal_handlers(self) -> None:
        """Register signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int) -> None:
            logger.info(f"Received signal {signum}, initiating shutdown")
            asyncio.ensure_future(self.stop())

        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handlers not supported for {signum}")

    # ------------------------------------------------------------------
    # Manual triggers
    # ------------------------------------------------------------------

    async def sample_now(self) -> Optional[CollectionRun]:
        """Run one sample immediately, subject to every guard."""
        return await self.scheduler.trigger(TaskName.SAMPLE.value)

    async def snapshot_now(self) -> Optional[CollectionRun]:
        """Run one snapshot immediately, subject to every guard."""
        return await self.scheduler.trigger(TaskName.SNAPSHOT.value)

    async def recent_runs(
        self, task: Optional[str] = None, since: Optional[datetime] = None
    ) -> List[CollectionRun]:
        if since is None:
            since = self.context.now() - timedelta(hours=1)
        return await self.storage.recent_runs(task, since)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def compare(self, start: datetime, end: datetime) -> Optional[Delta]:
        return await self.analysis.compare(start, end)

    async def deltas(self, start: datetime, end: datetime) -> List[Delta]:
        return await self.analysis.deltas(start, end)

    async def wait_summary(self, start: datetime, end: datetime) -> List[WaitSummaryRow]:
        return await self.analysis.wait_summary(start, end)

    async def anomaly_report(self, start: datetime, end: datetime) -> List[Finding]:
        return await self.anomalies.report(start, end)

    async def table_compare(
        self, table: str, start: datetime, end: datetime, schema: str = "public"
    ) -> Optional[TableDelta]:
        return await self.analysis.table_compare(table, start, end, schema)

    async def activity_at(self, at: datetime) -> ActivityAt:
        return await self.analysis.activity_at(at)

    async def recent_waits(self, window: Optional[timedelta] = None) -> List[Dict[str, Any]]:
        return await self.analysis.recent_waits(window)

    async def recent_locks(self, window: Optional[timedelta] = None) -> List[Dict[str, Any]]:
        return await self.analysis.recent_locks(window)

    async def recent_activity(self, window: Optional[timedelta] = None) -> List[Dict[str, Any]]:
        return await self.analysis.recent_activity(window)

    async def recent_progress(self, window: Optional[timedelta] = None) -> List[Dict[str, Any]]:
        return await self.analysis.recent_progress(window)

    async def recent_replication(self, window: Optional[timedelta] = None) -> List[Dict[str, Any]]:
        return await self.analysis.recent_replication(window)

    async def statement_compare(
        self, start: datetime, end: datetime, min_delta_ms: float = 100.0, limit: int = 25
    ) -> List[StatementDelta]:
        return await self.analysis.statement_compare(start, end, min_delta_ms, limit)

    async def summary_report(self, start: datetime, end: datetime) -> List[SummaryLine]:
        return await self.anomalies.summary_report(start, end)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def set_mode(self, mode) -> ModeState:
        """
        Operator override of the mode ladder.

        Raises:
            InvalidModeError: Unknown mode name
        """
        return self.modes.set_mode(mode)

    def get_mode(self) -> ModeState:
        return self.modes.state.model_copy(deep=True)

    def mode_profile(self, mode: Optional[TelemetryMode] = None) -> ModeProfile:
        if mode is None:
            return self.modes.profile()
        return profile_for(parse_mode(mode), self.context.settings())

    def enable(self) -> None:
        """Administrative switch on. The size governor may still hold collection off."""
        self.config.set("enabled", True)
        logger.warning("Telemetry collection enabled by operator")

    def disable(self) -> None:
        """Administrative switch off, independent of the size governor."""
        self.config.set("enabled", False)
        logger.warning("Telemetry collection disabled by operator")

    def configure(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply several settings at once.

        Raises:
            ConfigurationError: Unknown key or invalid value; nothing is applied
        """
        previous = self.config.overrides
        self.config.update(values)
        if "change_detection" in values or "change_detection_fallback" in values:
            try:
                self.detector.strategy()
            except ConfigurationError:
                self.config.restore(previous)
                raise
        return self.config.as_dict()

    async def cleanup(self, retention_days: Optional[float] = None) -> CleanupResult:
        """Manual retention pass; same logic as the scheduled one."""
        return await self.maintenance.cleanup(retention_days)

    # ------------------------------------------------------------------
    # Tracked tables
    # ------------------------------------------------------------------

    @staticmethod
    def _qualify(table: str, schema: str) -> str:
        if not table:
            raise ConfigurationError("Table name must not be empty")
        return table if "." in table else f"{schema}.{table}"

    def track_table(self, table: str, schema: str = "public") -> List[str]:
        """Add a table to the Snapshotter's per-table statistics."""
        name = self._qualify(table, schema)
        tracked = list(self.config.get("tracked_tables"))
        if name not in tracked:
            tracked.append(name)
            self.config.set("tracked_tables", tracked)
            logger.info(f"Tracking table {name}")
        return tracked

    def untrack_table(self, table: str, schema: str = "public") -> bool:
        """Returns True if the table was tracked."""
        name = self._qualify(table, schema)
        tracked = list(self.config.get("tracked_tables"))
        if name not in tracked:
            return False
        tracked.remove(name)
        self.config.set("tracked_tables", tracked)
        logger.info(f"No longer tracking table {name}")
        return True

    def list_tracked_tables(self) -> List[str]:
        return list(self.config.get("tracked_tables"))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> HealthReport:
        """
        Per-component status.

        Never raises: a component that cannot be inspected is reported
        unhealthy with the error in its detail.
        """
        settings = self.context.settings()
        now = self.context.now()
        components: List[ComponentHealth] = []

        storage_status = self.governor.status()
        last_sample_at = None
        last_snapshot_at = None
        try:
            storage_status.size_bytes = await self.governor.measure()
            latest_sample = await self.storage.latest_sample()
            latest_snapshot = await self.storage.latest_snapshot()
            last_sample_at = latest_sample.captured_at if latest_sample else None
            last_snapshot_at = latest_snapshot.captured_at if latest_snapshot else None
            components.append(
                ComponentHealth(
                    name="storage",
                    healthy=not storage_status.disabled,
                    detail={
                        "size_bytes": str(storage_status.size_bytes),
                        "warn_bytes": str(storage_status.warn_bytes),
                        "critical_bytes": str(storage_status.critical_bytes),
                        "recover_bytes": str(storage_status.recover_bytes),
                        "last_action": storage_status.last_action.value,
                        "action_taken": storage_status.action_taken,
                    },
                )
            )
        except Exception as e:
            logger.error(f"Health check could not inspect storage: {e}")
            components.append(ComponentHealth(name="storage", healthy=False, detail={"error": str(e)}))

        recent_trips = self.modes.recent_trip_count()
        mode = self.modes.current()
        components.append(
            ComponentHealth(
                name="circuit_breaker",
                healthy=recent_trips == 0,
                detail={
                    "recent_trips": str(recent_trips),
                    "total_trips": str(self.breaker.trip_count()),
                    "threshold_seconds": str(settings.breaker_threshold_seconds),
                },
            )
        )
        components.append(
            ComponentHealth(
                name="mode_controller",
                healthy=mode != TelemetryMode.EMERGENCY,
                detail={
                    "mode": mode.value,
                    "auto_mode": str(settings.auto_mode),
                    "sample_interval_seconds": str(self.modes.sample_interval()),
                    "last_transition_at": self.modes.state.last_transition_at.isoformat()
                    if self.modes.state.last_transition_at
                    else None,
                },
            )
        )
        try:
            strategy = self.detector.strategy().kind.value
            components.append(
                ComponentHealth(name="change_detector", healthy=True, detail={"strategy": strategy})
            )
        except TelemetryError as e:
            components.append(
                ComponentHealth(name="change_detector", healthy=False, detail={"error": str(e)})
            )

        collectors = {TaskName.SAMPLE.value: self.sampler, TaskName.SNAPSHOT.value: self.snapshotter}
        for name in self.scheduler.tasks():
            last_run = self.scheduler.get_task(name).last_run
            detail = {
                "last_status": last_run.status.value if last_run else None,
                "last_skip_reason": last_run.skip_reason.value
                if last_run and last_run.skip_reason
                else None,
                "last_started_at": last_run.started_at.isoformat() if last_run else None,
            }
            if name in collectors:
                stats = collectors[name].get_stats()
                stats.pop("name")
                detail.update({k: None if v is None else str(v) for k, v in stats.items()})
            components.append(
                ComponentHealth(
                    name=f"task:{name}",
                    healthy=last_run is None or last_run.status.value not in ("failed", "timeout"),
                    detail=detail,
                )
            )

        data_fresh = last_sample_at is not None and (
            as_utc(now) - as_utc(last_sample_at)
        ) <= timedelta(seconds=settings.freshness_max_age_seconds)

        effective = settings.enabled and not storage_status.disabled
        return HealthReport(
            checked_at=now,
            enabled=effective,
            admin_enabled=settings.enabled,
            disabled=not effective,
            mode=mode,
            recent_trip_count=recent_trips,
            storage=storage_status,
            last_sample_at=last_sample_at,
            last_snapshot_at=last_snapshot_at,
            data_fresh=data_fresh,
            components=components,
        )
