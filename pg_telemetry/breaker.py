"""
Circuit breaker for collection tasks.

Before a collection runs, the breaker looks at the last executed run of
the same task. A run that was slow and finished recently means the
observed system is already under pressure; the next attempt is skipped
instead of adding to it. Once the cooldown has passed a run is attempted
again, and a fast run resets the breaker without manual intervention.
"""

import logging
from datetime import timedelta
from typing import Dict, Optional

from pg_telemetry.context import TelemetryContext
from pg_telemetry.protocols import TelemetryStorage
from pg_telemetry.schemas import CollectionRun
from pg_telemetry.storage.partitions import as_utc

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Duration-based self-throttle, one decision per task per tick."""

    def __init__(self, context: TelemetryContext, storage: TelemetryStorage):
        self.context = context
        self.storage = storage
        self._trip_counts: Dict[str, int] = {}

    async def check(self, task: str) -> Optional[CollectionRun]:
        """
        Decide whether the next run of ``task`` must be skipped.

        Args:
            task: Task name

        Returns:
            The slow run that tripped the breaker, or None to proceed
        """
        settings = self.context.settings()
        last = await self.storage.last_executed_run(task)
        if last is None or last.completed_at is None:
            return None

        if last.duration_seconds <= settings.breaker_threshold_seconds:
            return None

        age = as_utc(self.context.now()) - as_utc(last.completed_at)
        if age >= timedelta(seconds=settings.breaker_cooldown_seconds):
            logger.info(
                f"Breaker for {task} cooling down over: last run took "
                f"{last.duration_seconds:.2f}s but finished {age.total_seconds():.0f}s ago"
            )
            return None

        self._trip_counts[task] = self._trip_counts.get(task, 0) + 1
        logger.warning(
            f"Circuit breaker tripped for {task}: last run {last.run_id} took "
            f"{last.duration_seconds:.2f}s (threshold {settings.breaker_threshold_seconds}s), "
            f"finished {age.total_seconds():.0f}s ago"
        )
        return last

    def trip_count(self, task: Optional[str] = None) -> int:
        """Trips since process start, for one task or all of them."""
        if task is not None:
            return self._trip_counts.get(task, 0)
        return sum(self._trip_counts.values())
