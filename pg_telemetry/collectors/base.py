"""
Base class for collection tasks.

A collection run is a sequence of sub-steps sharing one time budget.
Each sub-step is bounded by the remaining budget (and optionally by a
tighter bound of its own); exceeding a bound aborts that step, never the
whole run, and the outcome is recorded as a ``StepResult``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Tuple
import asyncio
import logging

from pg_telemetry.breaker import CircuitBreaker
from pg_telemetry.context import TelemetryContext
from pg_telemetry.modes import ModeController
from pg_telemetry.protocols import ObservedSystem, TelemetryStorage
from pg_telemetry.schemas import (
    CollectionRun,
    RunOutcome,
    RunStatus,
    SkipReason,
    StepResult,
    StepStatus,
)
from pg_telemetry.storage.governor import SizeGovernor

logger = logging.getLogger(__name__)


class RunBudget:
    """Total-time budget of one run, measured on the event loop clock."""

    def __init__(self, total_seconds: float):
        self.total_seconds = total_seconds
        self._deadline = asyncio.get_running_loop().time() + total_seconds

    def remaining(self) -> float:
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    @property
    def exhausted(self) -> bool:
        return self.remaining() <= 0


class BaseCollector(ABC):
    """
    Abstract base class for the Sampler and the Snapshotter.

    ``execute`` applies the gates every collection shares (size governor,
    administrative switch, circuit breaker) and then calls ``collect``.
    """

    def __init__(
        self,
        task: str,
        context: TelemetryContext,
        observed: ObservedSystem,
        storage: TelemetryStorage,
        governor: SizeGovernor,
        breaker: CircuitBreaker,
        modes: ModeController,
    ):
        """
        Initialize base collector.

        Args:
            task: Task name used for collection runs and logging
            context: Shared telemetry context
            observed: System being observed
            storage: Storage backend
            governor: Storage size governor
            breaker: Circuit breaker
            modes: Mode controller
        """
        self.task = task
        self.context = context
        self.observed = observed
        self.storage = storage
        self.governor = governor
        self.breaker = breaker
        self.modes = modes
        self._last_collection_time: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._collection_count = 0
        self._error_count = 0
        self._skip_count = 0

    @abstractmethod
    async def collect(self, run: CollectionRun) -> RunOutcome:
        """
        Collect and store one capture.

        Promises:
        - Never raises for observed-system problems; they become StepResults
        - Stores whatever was captured, even when the budget ran out
        """
        pass

    @abstractmethod
    def interval(self) -> float:
        """Seconds until the next tick."""
        pass

    async def execute(self, run: CollectionRun) -> RunOutcome:
        """
        Gate and run one collection.

        Args:
            run: The in-flight collection run

        Returns:
            Outcome to record on the run
        """
        try:
            await self.governor.check()
        except Exception as e:
            logger.error(f"{self.task}: storage size check failed: {e}")

        if self.governor.disabled:
            return self._skip(SkipReason.STORAGE_DISABLED, "storage above critical size")

        if not self.context.settings().enabled:
            return self._skip(SkipReason.DISABLED, "collection disabled by operator")

        slow_run = await self.breaker.check(self.task)
        if slow_run is not None:
            self.modes.record_trip(self.task)
            return self._skip(
                SkipReason.CIRCUIT_BREAKER,
                f"run {slow_run.run_id} took {slow_run.duration_seconds:.2f}s",
            )

        self._collection_count += 1
        self.modes.record_executed_run()
        outcome = await self.collect(run)
        if outcome.success:
            self._last_collection_time = self.context.now()
        else:
            self._error_count += 1
            self._last_error = outcome.error
        return outcome

    def _skip(self, reason: SkipReason, detail: str) -> RunOutcome:
        self._skip_count += 1
        logger.info(f"{self.task} skipped: {reason.value} ({detail})")
        return RunOutcome(status=RunStatus.SKIPPED, skip_reason=reason, error=detail)

    async def run_step(
        self,
        name: str,
        read: Callable[[], Awaitable[Any]],
        budget: RunBudget,
        bound: Optional[float] = None,
        default: Any = None,
    ) -> Tuple[StepResult, Any]:
        """
        Run one sub-step under the run budget.

        Args:
            name: Step name recorded in the StepResult
            read: Zero-argument coroutine factory performing the read
            budget: Budget of the enclosing run
            bound: Optional tighter bound for a single blocking wait
            default: Value returned when the step does not complete

        Returns:
            (step result, value read or ``default``)
        """
        remaining = budget.remaining()
        if remaining <= 0:
            logger.warning(f"{self.task}: {name} not started, run budget exhausted")
            return StepResult(name=name, status=StepStatus.TIMEOUT, detail="run budget exhausted"), default

        timeout = min(bound, remaining) if bound else remaining
        started = self.context.now()
        try:
            value = await asyncio.wait_for(read(), timeout=timeout)
            status, detail = StepStatus.OK, None
        except asyncio.TimeoutError:
            value = default
            status, detail = StepStatus.TIMEOUT, f"exceeded {timeout:.2f}s"
            logger.warning(f"{self.task}: {name} timed out after {timeout:.2f}s")
        except Exception as e:
            value = default
            status, detail = StepStatus.FAILED, str(e) or e.__class__.__name__
            logger.warning(f"{self.task}: {name} failed: {detail}")

        elapsed = (self.context.now() - started).total_seconds()
        return (
            StepResult(name=name, status=status, detail=detail, duration_ms=max(0, int(elapsed * 1000))),
            value,
        )

    @staticmethod
    def summarize(steps: List[StepResult], budget: RunBudget) -> RunStatus:
        """Run status from its steps."""
        if budget.exhausted and any(s.status == StepStatus.TIMEOUT for s in steps):
            return RunStatus.TIMEOUT
        if any(s.status in (StepStatus.FAILED, StepStatus.TIMEOUT, StepStatus.SKIPPED) for s in steps):
            return RunStatus.PARTIAL
        return RunStatus.SUCCESS

    def get_stats(self) -> dict:
        """
        Get collector statistics.

        Returns:
            Dictionary with collection stats
        """
        return {
            "name": self.task,
            "collections": self._collection_count,
            "skips": self._skip_count,
            "errors": self._error_count,
            "error_rate": self._error_count / max(1, self._collection_count),
            "last_collection": self._last_collection_time.isoformat()
            if self._last_collection_time
            else None,
            "last_error": self._last_error,
        }
