"""
Admission guard.

Runs inside a collection, before each expensive sub-step, and decides
from cheap aggregates whether that step may run. A denial skips one step
only; the rest of the run carries on.
"""

import logging
from typing import Optional

from pydantic import BaseModel

from pg_telemetry.context import TelemetryContext

logger = logging.getLogger(__name__)


class LoadReading(BaseModel):
    """Cheap aggregates read at the start of a sample. None means unavailable."""

    active_units: Optional[int] = None
    blocked_units: Optional[int] = None
    capacity: Optional[int] = None

    @property
    def load_ratio(self) -> Optional[float]:
        if self.active_units is None or not self.capacity:
            return None
        return self.active_units / self.capacity


class AdmissionGuard:
    """Cost-based skip of the activity listing and the lock graph."""

    def __init__(self, context: TelemetryContext):
        self.context = context

    def check_activity(self, reading: LoadReading) -> Optional[str]:
        """
        Returns:
            Skip reason, or None when the activity listing may run
        """
        limit = self.context.settings().guard_max_active_units
        if reading.active_units is None:
            reason = "guard: active unit count unavailable"
        elif reading.active_units > limit:
            reason = f"guard: {reading.active_units} active units > {limit}"
        else:
            return None
        logger.info(f"Skipping activity collection ({reason})")
        return reason

    def check_lock_graph(self, reading: LoadReading) -> Optional[str]:
        """
        Returns:
            Skip reason, or None when the lock graph may be read
        """
        limit = self.context.settings().guard_max_blocked_units
        if reading.blocked_units is None:
            reason = "guard: blocked unit count unavailable"
        elif reading.blocked_units > limit:
            reason = f"guard: {reading.blocked_units} blocked units > {limit}"
        else:
            return None
        logger.info(f"Skipping lock graph collection ({reason})")
        return reason
