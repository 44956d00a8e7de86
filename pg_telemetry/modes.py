"""
Mode ladder and its controller.

normal -> light -> emergency trade fidelity for safety. Automatic moves
go one rung at a time, except the trip-triggered escalation to
emergency, which may skip light. Operators may pick any rung through
``set_mode``.
"""

import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Optional, Set, Tuple

from pg_telemetry.config import TelemetrySettings
from pg_telemetry.context import TelemetryContext
from pg_telemetry.exceptions import InvalidModeError
from pg_telemetry.schemas import ModeProfile, ModeState, ModeTransition, TelemetryMode
from pg_telemetry.storage.partitions import as_utc

logger = logging.getLogger(__name__)

# Dedicated stream, routed to mode-transitions.log
transitions_logger = logging.getLogger("pg_telemetry.transitions")

# Transitions the controller may make on its own
AUTOMATIC_TRANSITIONS: Set[Tuple[TelemetryMode, TelemetryMode]] = {
    (TelemetryMode.NORMAL, TelemetryMode.LIGHT),
    (TelemetryMode.LIGHT, TelemetryMode.NORMAL),
    (TelemetryMode.NORMAL, TelemetryMode.EMERGENCY),
    (TelemetryMode.LIGHT, TelemetryMode.EMERGENCY),
    (TelemetryMode.EMERGENCY, TelemetryMode.LIGHT),
}

MAX_HISTORY = 100


def profile_for(mode: TelemetryMode, settings: TelemetrySettings) -> ModeProfile:
    """What a rung collects and how often, under the given settings."""
    if mode == TelemetryMode.NORMAL:
        return ModeProfile(
            mode=mode,
            sample_interval_seconds=settings.sample_interval_normal,
            activity_enabled=True,
            progress_enabled=True,
            locks_enabled=True,
            changes_enabled=True,
            description="Full sampling: waits, activity, progress, locks, structural changes",
        )
    if mode == TelemetryMode.LIGHT:
        return ModeProfile(
            mode=mode,
            sample_interval_seconds=settings.sample_interval_light,
            activity_enabled=True,
            progress_enabled=False,
            locks_enabled=True,
            changes_enabled=True,
            description="Reduced sampling: progress tracking disabled",
        )
    return ModeProfile(
        mode=mode,
        sample_interval_seconds=settings.sample_interval_emergency,
        activity_enabled=False,
        progress_enabled=False,
        locks_enabled=False,
        changes_enabled=False,
        description="Minimal sampling: wait event aggregate only",
    )


def parse_mode(mode) -> TelemetryMode:
    """Validate a mode name, raising InvalidModeError."""
    if isinstance(mode, TelemetryMode):
        return mode
    try:
        return TelemetryMode(str(mode).strip().lower())
    except ValueError:
        raise InvalidModeError(str(mode))


class ModeController:
    """
    Sole writer of ``ModeState``.

    Trips are counted across collection tasks in a rolling window; the
    load ratio is fed in by the sampler on each executed run.
    """

    def __init__(self, context: TelemetryContext):
        self.context = context
        self._trips: Deque[datetime] = deque()

    @property
    def state(self) -> ModeState:
        return self.context.mode_state

    def current(self) -> TelemetryMode:
        return self.state.current

    def profile(self) -> ModeProfile:
        return profile_for(self.state.current, self.context.settings())

    def sample_interval(self) -> float:
        return self.profile().sample_interval_seconds

    def _prune_trips(self, now: datetime) -> None:
        window = timedelta(seconds=self.context.settings().emergency_trip_window_seconds)
        while self._trips and as_utc(now) - as_utc(self._trips[0]) > window:
            self._trips.popleft()

    def recent_trip_count(self) -> int:
        self._prune_trips(self.context.now())
        return len(self._trips)

    def record_trip(self, task: str) -> Optional[ModeTransition]:
        """
        Count one breaker trip and escalate if the window is full.

        Returns:
            The transition made, if any
        """
        now = self.context.now()
        self._trips.append(now)
        self.state.consecutive_trip_count += 1
        self.state.last_trip_at = now
        self._prune_trips(now)
        logger.debug(f"Trip recorded for {task}: {len(self._trips)} in window")
        return self._maybe_escalate(now)

    def record_executed_run(self) -> None:
        """An executed run breaks a streak of trips."""
        self.state.consecutive_trip_count = 0

    def _maybe_escalate(self, now: datetime) -> Optional[ModeTransition]:
        settings = self.context.settings()
        if not settings.auto_mode or self.state.current == TelemetryMode.EMERGENCY:
            return None
        if len(self._trips) >= settings.emergency_trip_count:
            return self._transition(
                TelemetryMode.EMERGENCY,
                f"{len(self._trips)} circuit breaker trips within "
                f"{settings.emergency_trip_window_seconds:g}s",
                now,
            )
        return None

    def evaluate(self, load_ratio: Optional[float] = None) -> Optional[ModeTransition]:
        """
        Apply the automatic transition rules once.

        Args:
            load_ratio: Active units over capacity, None when unknown

        Returns:
            The transition made, if any
        """
        settings = self.context.settings()
        if not settings.auto_mode:
            return None

        now = self.context.now()
        self._prune_trips(now)

        escalation = self._maybe_escalate(now)
        if escalation:
            return escalation

        current = self.state.current
        if current == TelemetryMode.EMERGENCY:
            cooldown = timedelta(seconds=settings.emergency_cooldown_seconds)
            quiet_since = max(
                (as_utc(t) for t in (self.state.last_trip_at, self.state.last_transition_at) if t),
                default=None,
            )
            if quiet_since is None or as_utc(now) - quiet_since >= cooldown:
                return self._transition(
                    TelemetryMode.LIGHT,
                    f"no circuit breaker trips for {settings.emergency_cooldown_seconds:g}s",
                    now,
                )
            return None

        if load_ratio is None:
            return None

        if current == TelemetryMode.NORMAL and load_ratio >= settings.load_upper_threshold:
            return self._transition(
                TelemetryMode.LIGHT,
                f"load {load_ratio:.2f} >= upper threshold {settings.load_upper_threshold}",
                now,
            )
        if current == TelemetryMode.LIGHT and load_ratio < settings.load_lower_threshold:
            return self._transition(
                TelemetryMode.NORMAL,
                f"load {load_ratio:.2f} < lower threshold {settings.load_lower_threshold}",
                now,
            )
        return None

    def set_mode(self, mode, cause: str = "operator request") -> ModeState:
        """
        Operator override: move to any rung.

        Raises:
            InvalidModeError: Unknown mode name
        """
        target = parse_mode(mode)
        if target != self.state.current:
            self._transition(target, cause, self.context.now(), manual=True)
        return self.state.model_copy(deep=True)

    def _transition(
        self, target: TelemetryMode, cause: str, now: datetime, manual: bool = False
    ) -> ModeTransition:
        source = self.state.current
        if not manual and (source, target) not in AUTOMATIC_TRANSITIONS:
            raise RuntimeError(f"Illegal mode transition {source.value} -> {target.value}")

        transition = ModeTransition(from_mode=source, to_mode=target, at=now, cause=cause)
        if source == TelemetryMode.EMERGENCY:
            # Trips that led into emergency must not count towards re-entering it
            self._trips.clear()
        self.state.current = target
        self.state.last_transition_at = now
        self.state.history.append(transition)
        del self.state.history[:-MAX_HISTORY]

        transitions_logger.warning(
            f"Mode {source.value} -> {target.value}: {cause}",
            extra={"from_mode": source.value, "to_mode": target.value},
        )
        return transition
