"""
Injectable telemetry context.

Holds the shared, read-mostly state every component needs: the config
store, the mode state and the clock. Components receive the context by
reference instead of reading module globals, so several independent
collectors can live in one process (and in one test session).
"""

from datetime import datetime, timezone
from typing import Callable, Optional

from pg_telemetry.config import ConfigStore, TelemetrySettings
from pg_telemetry.schemas import ModeState

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock."""
    return datetime.now(timezone.utc)


class TelemetryContext:
    """Shared handle passed to every component."""

    def __init__(
        self,
        config: Optional[ConfigStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or ConfigStore()
        self.clock: Clock = clock or utc_now
        # Written only by the ModeController.
        self.mode_state = ModeState(current=self.config.current().mode)

    def now(self) -> datetime:
        return self.clock()

    def settings(self) -> TelemetrySettings:
        return self.config.current()
