"""
Snapshotter: low-frequency cumulative counter capture.
"""

import logging
from typing import Dict, List

from pg_telemetry.collectors.base import BaseCollector, RunBudget
from pg_telemetry.schemas import (
    CollectionRun,
    RunOutcome,
    RunStatus,
    Snapshot,
    StatementStats,
    StepResult,
    StepStatus,
    TaskName,
)

logger = logging.getLogger(__name__)


class Snapshotter(BaseCollector):
    """Writes one Snapshot per executed run, plus stats of tracked tables."""

    def __init__(self, *args, **kwargs):
        super().__init__(TaskName.SNAPSHOT.value, *args, **kwargs)

    def interval(self) -> float:
        return self.context.settings().snapshot_interval_seconds

    async def collect(self, run: CollectionRun) -> RunOutcome:
        settings = self.context.settings()
        budget = RunBudget(settings.run_timeout_seconds)
        steps: List[StepResult] = []
        skipped: Dict[str, str] = {}

        step, reading = await self.run_step(
            "counters", self.observed.read_cumulative_counters, budget
        )
        steps.append(step)
        if reading is None:
            # Nothing to pair with the previous snapshot
            return RunOutcome(
                status=RunStatus.TIMEOUT if step.status == StepStatus.TIMEOUT else RunStatus.FAILED,
                steps=steps,
                error=f"counters {step.status.value}: {step.detail}",
            )

        tables = []
        if settings.tracked_tables:
            step, tables = await self.run_step(
                "tables",
                lambda: self.observed.read_table_stats(list(settings.tracked_tables)),
                budget,
                default=[],
            )
            steps.append(step)

        step, replicas = await self.run_step(
            "replication", self.observed.read_replication, budget, default=[]
        )
        steps.append(step)

        statements = []
        if not settings.statements_enabled:
            skipped["statements"] = "disabled by configuration"
            steps.append(
                StepResult(name="statements", status=StepStatus.DISABLED, detail=skipped["statements"])
            )
        else:
            step, statements = await self.run_step(
                "statements",
                lambda: self.observed.read_statement_stats(
                    settings.statements_top_n, settings.statements_min_calls
                ),
                budget,
                default=[],
            )
            steps.append(step)

        for step in steps:
            if step.status in (StepStatus.FAILED, StepStatus.TIMEOUT):
                skipped.setdefault(step.name, f"{step.status.value}: {step.detail}")

        snapshot = Snapshot(
            captured_at=run.started_at,
            counters=reading.counters,
            gauges=reading.gauges,
            structural_marker=reading.structural_marker,
            epoch=reading.epoch,
            tables=tables or [],
            statements=[self._truncate(s, settings.query_preview_chars) for s in statements or []],
            replicas=replicas or [],
            skipped=skipped,
        )

        try:
            await self.storage.append_snapshot(snapshot)
        except Exception as e:
            logger.error(f"Failed to store snapshot captured at {run.started_at.isoformat()}: {e}")
            return RunOutcome(status=RunStatus.FAILED, steps=steps, error=f"store failed: {e}")

        status = self.summarize(steps, budget)
        logger.debug(
            f"Snapshot stored: {len(snapshot.counters)} counters, "
            f"{len(snapshot.tables)} tables, {len(snapshot.statements)} statements, "
            f"{len(snapshot.replicas)} replicas, status {status.value}"
        )
        return RunOutcome(status=status, steps=steps)

    @staticmethod
    def _truncate(stats: StatementStats, limit: int) -> StatementStats:
        text = stats.query_preview
        if text is None or len(text) <= limit:
            return stats
        return stats.model_copy(update={"query_preview": text[:limit]})
