"""
Retention and the storage size governor.

The governor runs on every collection tick. It escalates cleanup as the
collector's own footprint grows and disables collection outright when
cleanup cannot bring it under the critical limit. Re-enabling requires
the size to fall below a recover point strictly below critical, so the
collector cannot flap at the boundary.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from pg_telemetry.context import TelemetryContext
from pg_telemetry.protocols import ObservedSystem, TelemetryStorage
from pg_telemetry.schemas import CleanupResult, GovernorAction, GovernorStatus
from pg_telemetry.storage.partitions import as_utc, pretty_bytes, retention_cutoff

logger = logging.getLogger(__name__)

# Dedicated stream, routed to storage-governor.log
governor_logger = logging.getLogger("pg_telemetry.governor")


async def apply_retention(
    storage: TelemetryStorage,
    now: datetime,
    retention_days: float,
    run_retention_hours: float,
) -> CleanupResult:
    """
    Drop every partition that ended before the retention cutoff.

    The cutoff is computed once, so a partition is either wholly kept or
    wholly dropped. Completed collection runs are pruned under their own,
    shorter policy (never longer than the data retention).

    Args:
        storage: Storage backend
        now: Reference time for the cutoff
        retention_days: Days of samples and snapshots to keep
        run_retention_hours: Hours of collection runs to keep

    Returns:
        What was dropped
    """
    cutoff = retention_cutoff(now, retention_days)
    dropped = await storage.drop_partitions_before(cutoff)
    run_hours = min(run_retention_hours, retention_days * 24)
    pruned = await storage.prune_runs(as_utc(now) - timedelta(hours=run_hours))
    return CleanupResult(
        cutoff=cutoff,
        retention_days=retention_days,
        dropped_partitions=[p.name for p in dropped],
        dropped_samples=sum(p.samples for p in dropped),
        dropped_snapshots=sum(p.snapshots for p in dropped),
        dropped_runs=pruned,
    )


class SizeGovernor:
    """Escalating cleanup with an auto-disable / auto-recover hysteresis."""

    def __init__(
        self,
        context: TelemetryContext,
        storage: TelemetryStorage,
        observed: Optional[ObservedSystem] = None,
    ):
        self.context = context
        self.storage = storage
        self.observed = observed
        settings = context.settings()
        self._status = GovernorStatus(
            warn_bytes=settings.storage_warn_bytes,
            critical_bytes=settings.storage_critical_bytes,
            recover_bytes=settings.storage_recover_bytes,
        )

    @property
    def disabled(self) -> bool:
        return self._status.disabled

    def status(self) -> GovernorStatus:
        return self._status.model_copy()

    async def measure(self) -> int:
        """Footprint as reported by the observed system, else by the backend."""
        size = None
        if self.observed is not None:
            try:
                size = await self.observed.read_own_storage_footprint()
            except Exception as e:
                logger.warning(f"Could not read storage footprint from observed system: {e}")
        if size is None:
            size = await self.storage.size_bytes()
        return int(size)

    async def check(self) -> GovernorStatus:
        """
        Measure the footprint and act on it.

        Returns:
            Status after this check
        """
        settings = self.context.settings()
        now = self.context.now()
        status = self._status
        status.warn_bytes = settings.storage_warn_bytes
        status.critical_bytes = settings.storage_critical_bytes
        status.recover_bytes = settings.storage_recover_bytes
        status.last_checked_at = now

        size = await self.measure()

        if status.disabled:
            if size < status.recover_bytes:
                status.disabled = False
                status.disabled_at = None
                status.last_action = GovernorAction.RE_ENABLED
                status.action_taken = (
                    f"Size {pretty_bytes(size)} below recover point "
                    f"{pretty_bytes(status.recover_bytes)}; collection re-enabled"
                )
                governor_logger.warning(status.action_taken)
            else:
                result = await self._cleanup(now, settings.critical_retention_days)
                size = await self.measure()
                status.last_action = GovernorAction.STILL_DISABLED
                status.action_taken = (
                    f"Aggressive cleanup dropped {len(result.dropped_partitions)} partition(s); "
                    f"size {pretty_bytes(size)} not below recover point "
                    f"{pretty_bytes(status.recover_bytes)}; collection stays disabled"
                )
                governor_logger.info(status.action_taken)

        elif size >= status.critical_bytes:
            governor_logger.warning(
                f"Storage size {pretty_bytes(size)} at or above critical "
                f"{pretty_bytes(status.critical_bytes)}, running aggressive cleanup"
            )
            result = await self._cleanup(now, settings.critical_retention_days)
            size = await self.measure()
            if size >= status.critical_bytes:
                status.disabled = True
                status.disabled_at = now
                status.last_action = GovernorAction.DISABLED
                status.action_taken = (
                    f"Aggressive cleanup ({settings.critical_retention_days:g} day retention) "
                    f"dropped {len(result.dropped_partitions)} partition(s); size "
                    f"{pretty_bytes(size)} still at or above critical "
                    f"{pretty_bytes(status.critical_bytes)}; collection disabled"
                )
                governor_logger.error(status.action_taken)
            else:
                status.last_action = GovernorAction.AGGRESSIVE_CLEANUP
                status.action_taken = (
                    f"Aggressive cleanup ({settings.critical_retention_days:g} day retention) "
                    f"dropped {len(result.dropped_partitions)} partition(s); "
                    f"size now {pretty_bytes(size)}"
                )
                governor_logger.warning(status.action_taken)

        elif size >= status.warn_bytes:
            result = await self._cleanup(now, settings.warn_retention_days)
            size = await self.measure()
            status.last_action = GovernorAction.PROACTIVE_CLEANUP
            status.action_taken = (
                f"Proactive cleanup ({settings.warn_retention_days:g} day retention) "
                f"dropped {len(result.dropped_partitions)} partition(s); "
                f"size now {pretty_bytes(size)}"
            )
            governor_logger.warning(status.action_taken)

        else:
            status.last_action = GovernorAction.NONE
            status.action_taken = None

        status.size_bytes = size
        return self.status()

    async def _cleanup(self, now: datetime, retention_days: float) -> CleanupResult:
        settings = self.context.settings()
        return await apply_retention(
            self.storage, now, retention_days, settings.run_retention_hours
        )
