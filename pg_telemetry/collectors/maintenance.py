"""
Storage maintenance tasks: retention cleanup and partition creation.

Neither task touches the observed system, so neither goes through the
circuit breaker or the admission guard.
"""

import logging
from typing import List, Optional

from pg_telemetry.context import TelemetryContext
from pg_telemetry.exceptions import ConfigurationError
from pg_telemetry.protocols import TelemetryStorage
from pg_telemetry.schemas import (
    CleanupResult,
    CollectionRun,
    RunOutcome,
    RunStatus,
    StepResult,
    StepStatus,
)
from pg_telemetry.storage.governor import apply_retention

logger = logging.getLogger(__name__)


class MaintenanceTasks:
    """Cleanup and partition maintenance, scheduled and on demand."""

    def __init__(self, context: TelemetryContext, storage: TelemetryStorage):
        self.context = context
        self.storage = storage
        self.last_cleanup: Optional[CleanupResult] = None

    def cleanup_interval(self) -> float:
        return self.context.settings().cleanup_interval_seconds

    def partition_interval(self) -> float:
        return self.context.settings().partition_interval_seconds

    async def cleanup(self, retention_days: Optional[float] = None) -> CleanupResult:
        """
        Drop partitions older than the retention window.

        Args:
            retention_days: Override of the configured retention

        Returns:
            What was dropped

        Raises:
            ConfigurationError: Non-positive retention
        """
        settings = self.context.settings()
        if retention_days is None:
            retention_days = settings.retention_days
        if retention_days <= 0:
            raise ConfigurationError(f"Retention must be positive, got {retention_days}")

        result = await apply_retention(
            self.storage, self.context.now(), retention_days, settings.run_retention_hours
        )
        self.last_cleanup = result
        logger.info(
            f"Cleanup ({retention_days:g} day retention): dropped "
            f"{len(result.dropped_partitions)} partition(s), {result.dropped_samples} samples, "
            f"{result.dropped_snapshots} snapshots, {result.dropped_runs} runs"
        )
        return result

    async def ensure_partitions(self) -> List[str]:
        settings = self.context.settings()
        created = await self.storage.ensure_partitions(
            self.context.now(), settings.partition_lookahead_days
        )
        if created:
            logger.info(f"Created {len(created)} partition(s): {', '.join(created)}")
        return created

    async def execute_cleanup(self, run: CollectionRun) -> RunOutcome:
        result = await self.cleanup()
        return RunOutcome(
            status=RunStatus.SUCCESS,
            steps=[
                StepResult(
                    name="cleanup",
                    status=StepStatus.OK,
                    detail=f"dropped {len(result.dropped_partitions)} partition(s)",
                )
            ],
        )

    async def execute_partitions(self, run: CollectionRun) -> RunOutcome:
        created = await self.ensure_partitions()
        return RunOutcome(
            status=RunStatus.SUCCESS,
            steps=[
                StepResult(
                    name="partitions",
                    status=StepStatus.OK,
                    detail=f"created {len(created)} partition(s)",
                )
            ],
        )
