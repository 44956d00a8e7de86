"""
Sampler: high-frequency point-in-time capture.

Reads the cheap load aggregates first, lets the mode controller react to
them, then runs the sub-collections the current rung allows. The wait
event aggregate always runs; the activity listing and the lock graph go
through the admission guard first.
"""

import logging
from typing import Dict, List, Tuple

from pg_telemetry.admission import AdmissionGuard, LoadReading
from pg_telemetry.change_detector import ChangeDetector
from pg_telemetry.collectors.base import BaseCollector, RunBudget
from pg_telemetry.schemas import (
    ActiveOperation,
    CollectionRun,
    RunOutcome,
    RunStatus,
    Sample,
    StepResult,
    StepStatus,
    TaskName,
)

logger = logging.getLogger(__name__)


class Sampler(BaseCollector):
    """Writes one Sample per executed run."""

    def __init__(self, *args, guard: AdmissionGuard, detector: ChangeDetector, **kwargs):
        super().__init__(TaskName.SAMPLE.value, *args, **kwargs)
        self.guard = guard
        self.detector = detector

    def interval(self) -> float:
        return self.modes.sample_interval()

    async def read_load(self, budget: RunBudget) -> Tuple[StepResult, LoadReading]:
        """Load aggregates; an empty reading when they cannot be read."""
        async def read() -> LoadReading:
            return LoadReading(
                active_units=await self.observed.count_active_units(),
                blocked_units=await self.observed.count_blocked_units(),
                capacity=await self.observed.unit_capacity(),
            )

        step, reading = await self.run_step(
            "load", read, budget, bound=self.context.settings().lock_timeout_seconds
        )
        if step.status != StepStatus.OK:
            return step, LoadReading()
        return step, reading

    async def collect(self, run: CollectionRun) -> RunOutcome:
        settings = self.context.settings()
        budget = RunBudget(settings.run_timeout_seconds)
        captured_at = run.started_at
        steps: List[StepResult] = []
        skipped: Dict[str, str] = {}

        step, reading = await self.read_load(budget)
        steps.append(step)
        self.modes.evaluate(reading.load_ratio)
        profile = self.modes.profile()

        step, wait_events = await self.run_step(
            "wait_events", self.observed.read_wait_events, budget, default=[]
        )
        steps.append(step)

        # Activity listing
        operations: List[ActiveOperation] = []
        if not profile.activity_enabled:
            steps.append(self._disabled("activity", profile.mode.value, skipped))
        else:
            reason = self.guard.check_activity(reading)
            if reason:
                steps.append(StepResult(name="activity", status=StepStatus.SKIPPED, detail=reason))
                skipped["activity"] = reason
            else:
                step, operations = await self.run_step(
                    "activity",
                    lambda: self.observed.read_active_operations(settings.activity_top_n),
                    budget,
                    default=[],
                )
                steps.append(step)
                operations = [self._truncate(op, settings.query_preview_chars) for op in operations]

        # Long-running operation progress
        progress = []
        if not profile.progress_enabled:
            steps.append(self._disabled("progress", profile.mode.value, skipped))
        else:
            step, progress = await self.run_step(
                "progress", self.observed.read_progress, budget, default=[]
            )
            steps.append(step)

        # Lock graph
        lock_graph = []
        if not profile.locks_enabled:
            steps.append(self._disabled("locks", profile.mode.value, skipped))
        else:
            reason = self.guard.check_lock_graph(reading)
            if reason:
                steps.append(StepResult(name="locks", status=StepStatus.SKIPPED, detail=reason))
                skipped["locks"] = reason
            else:
                step, lock_graph = await self.run_step(
                    "locks",
                    self.observed.read_lock_graph,
                    budget,
                    bound=settings.lock_timeout_seconds,
                    default=[],
                )
                steps.append(step)

        # Structural changes
        structural_changes = []
        if not profile.changes_enabled:
            steps.append(self._disabled("changes", profile.mode.value, skipped))
        else:
            step, structural_changes = await self.run_step(
                "changes",
                lambda: self.detector.detect(operations),
                budget,
                bound=settings.lock_timeout_seconds,
                default=[],
            )
            steps.append(step)

        for step in steps:
            if step.status in (StepStatus.FAILED, StepStatus.TIMEOUT):
                skipped.setdefault(step.name, f"{step.status.value}: {step.detail}")

        sample = Sample(
            captured_at=captured_at,
            mode=profile.mode,
            wait_events=wait_events or [],
            active_operations=operations or [],
            lock_graph=lock_graph or [],
            progress=progress or [],
            structural_changes=structural_changes or [],
            skipped=skipped,
        )

        try:
            await self.storage.append_sample(sample)
        except Exception as e:
            logger.error(f"Failed to store sample captured at {captured_at.isoformat()}: {e}")
            return RunOutcome(status=RunStatus.FAILED, steps=steps, error=f"store failed: {e}")

        status = self.summarize(steps, budget)
        logger.debug(
            f"Sample stored ({profile.mode.value}): {len(sample.wait_events)} wait events, "
            f"{len(sample.active_operations)} operations, {len(sample.lock_graph)} lock edges, "
            f"status {status.value}"
        )
        return RunOutcome(status=status, steps=steps)

    @staticmethod
    def _disabled(name: str, mode: str, skipped: Dict[str, str]) -> StepResult:
        skipped[name] = f"disabled in {mode} mode"
        return StepResult(name=name, status=StepStatus.DISABLED, detail=skipped[name])

    @staticmethod
    def _truncate(operation: ActiveOperation, limit: int) -> ActiveOperation:
        text = operation.text_preview
        if text is None or len(text) <= limit:
            return operation
        return operation.model_copy(update={"text_preview": text[:limit]})
