"""
Scheduler: timer plus task registry.

Each registered task gets its own loop: tick, then sleep for whatever
interval the task reports at that moment (the sample interval follows
the mode ladder). Before a tick runs, the storage engine is asked to
open a collection run; if another run of the same task is still in
flight, the tick is recorded as a ``duplicate_run`` skip instead.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from pg_telemetry.context import TelemetryContext
from pg_telemetry.protocols import TelemetryStorage
from pg_telemetry.schemas import CollectionRun, RunOutcome, RunStatus, SkipReason

logger = logging.getLogger(__name__)

# Added to the run budget before the scheduler gives up on a tick
TIMEOUT_GRACE_SECONDS = 5.0


class ScheduledTask:
    """One entry of the task registry."""

    def __init__(
        self,
        name: str,
        execute: Callable[[CollectionRun], Awaitable[RunOutcome]],
        interval: Callable[[], float],
        timeout: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            name: Task name, also the CollectionRun task
            execute: Runs one tick for an opened CollectionRun
            interval: Seconds until the next tick, read after every tick
            timeout: Hard limit of one tick in seconds
        """
        self.name = name
        self.execute = execute
        self.interval = interval
        self.timeout = timeout
        self.last_run: Optional[CollectionRun] = None


class Scheduler:
    """Runs registered tasks periodically, at most one in-flight run per task."""

    def __init__(self, context: TelemetryContext, storage: TelemetryStorage):
        self.context = context
        self.storage = storage
        self._tasks: Dict[str, ScheduledTask] = {}
        self._loops: Dict[str, asyncio.Task] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def register(
        self,
        name: str,
        execute: Callable[[CollectionRun], Awaitable[RunOutcome]],
        interval: Callable[[], float],
        timeout: Optional[Callable[[], float]] = None,
    ) -> ScheduledTask:
        if name in self._tasks:
            raise ValueError(f"Task {name} already registered")
        task = ScheduledTask(name, execute, interval, timeout)
        self._tasks[name] = task
        logger.info(f"Registered task: {name}")
        return task

    def unregister(self, name: str) -> None:
        if name in self._tasks:
            loop = self._loops.pop(name, None)
            if loop:
                loop.cancel()
            del self._tasks[name]
            logger.info(f"Unregistered task: {name}")

    def tasks(self) -> List[str]:
        return list(self._tasks)

    def get_task(self, name: str) -> ScheduledTask:
        if name not in self._tasks:
            raise KeyError(f"Unknown task: {name}")
        return self._tasks[name]

    def _timeout_for(self, task: ScheduledTask) -> float:
        if task.timeout is not None:
            return task.timeout()
        return self.context.settings().run_timeout_seconds + TIMEOUT_GRACE_SECONDS

    async def tick(self, name: str) -> Optional[CollectionRun]:
        """
        Run one tick of a task now.

        Args:
            name: Registered task name

        Returns:
            The completed CollectionRun, or None if no run could be opened
        """
        task = self.get_task(name)
        settings = self.context.settings()
        started_at = self.context.now()
        run = CollectionRun(run_id=uuid.uuid4().hex, task=name, started_at=started_at)

        try:
            blocking = await self.storage.try_begin_run(
                run, started_at - timedelta(seconds=settings.stale_run_seconds)
            )
        except Exception as e:
            logger.error(f"{name}: could not open collection run: {e}")
            return None

        if blocking is not None:
            skipped = run.model_copy(
                update={
                    "completed_at": started_at,
                    "duration_ms": 0,
                    "status": RunStatus.SKIPPED,
                    "skip_reason": SkipReason.DUPLICATE_RUN,
                    "error": f"run {blocking.run_id} still in flight",
                }
            )
            logger.warning(
                f"{name} skipped: run {blocking.run_id} started at "
                f"{blocking.started_at.isoformat()} still in flight"
            )
            try:
                await self.storage.record_run(skipped)
            except Exception as e:
                logger.error(f"{name}: could not record skipped run: {e}")
            task.last_run = skipped
            return skipped

        timeout = self._timeout_for(task)
        try:
            outcome = await asyncio.wait_for(task.execute(run), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"{name} run {run.run_id} exceeded {timeout:.1f}s")
            outcome = RunOutcome(status=RunStatus.TIMEOUT, error=f"exceeded {timeout:.1f}s")
        except Exception as e:
            logger.exception(f"{name} run {run.run_id} failed: {e}")
            outcome = RunOutcome(status=RunStatus.FAILED, error=str(e) or e.__class__.__name__)

        completed_at = self.context.now()
        duration_ms = max(0, int((completed_at - started_at).total_seconds() * 1000))
        run = run.model_copy(
            update={
                "completed_at": completed_at,
                "duration_ms": duration_ms,
                "status": outcome.status,
                "success": outcome.success,
                "skip_reason": outcome.skip_reason,
                "steps": outcome.steps,
                "error": outcome.error,
            }
        )
        try:
            await self.storage.complete_run(run)
        except Exception as e:
            logger.error(f"{name}: could not complete run {run.run_id}: {e}")

        logger.debug(
            f"{name} run {run.run_id}: {run.status.value} in {duration_ms}ms",
            extra={"task": name, "run_id": run.run_id, "duration_ms": duration_ms},
        )
        task.last_run = run
        return run

    async def trigger(self, name: str) -> Optional[CollectionRun]:
        """Manual tick, subject to the same duplicate-run check."""
        return await self.tick(name)

    async def start(self) -> None:
        """Start one loop per registered task."""
        if self._running:
            logger.warning("Scheduler already running")
            return
        self._running = True
        for name, task in self._tasks.items():
            self._loops[name] = asyncio.create_task(self._loop(task))
        logger.info(f"Scheduler started with {len(self._tasks)} task(s)")

    async def stop(self) -> None:
        """Cancel every loop and wait for them to finish."""
        if not self._running:
            return
        self._running = False
        loops = list(self._loops.values())
        for loop in loops:
            loop.cancel()
        await asyncio.gather(*loops, return_exceptions=True)
        self._loops.clear()
        logger.info("Scheduler stopped")

    async def _loop(self, task: ScheduledTask) -> None:
        while self._running:
            try:
                await self.tick(task.name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in {task.name} loop: {e}")

            try:
                interval = task.interval()
            except Exception as e:
                logger.error(f"Could not read interval of {task.name}: {e}")
                interval = 60.0
            await asyncio.sleep(interval)
