"""
Telemetry configuration.

Configuration is a mutable key/value store layered over typed defaults.
Every component reads ``ConfigStore.current()`` once at the start of a
run and never holds on to it past that run, so changes made through
``set()`` take effect on the next tick.

Priority (highest to lowest):
1. Runtime ``set()`` / ``update()`` calls
2. Environment variables (``PG_TELEMETRY_<KEY>``)
3. YAML config file
4. Defaults
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from pg_telemetry.exceptions import ConfigurationError
from pg_telemetry.schemas import ChangeDetectionStrategy, TelemetryMode

logger = logging.getLogger(__name__)

ENV_PREFIX = "PG_TELEMETRY_"

GIB = 1024 * 1024 * 1024


class TelemetrySettings(BaseModel):
    """Every tunable with its default."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    # Switches
    enabled: bool = Field(True, description="Administrative kill switch")
    mode: TelemetryMode = Field(TelemetryMode.NORMAL, description="Mode applied at startup")
    auto_mode: bool = Field(True, description="Let the mode controller move on the ladder")

    # Intervals
    sample_interval_normal: float = Field(30.0, gt=0)
    sample_interval_light: float = Field(60.0, gt=0)
    sample_interval_emergency: float = Field(120.0, gt=0)
    snapshot_interval_seconds: float = Field(300.0, gt=0)
    cleanup_interval_seconds: float = Field(86400.0, gt=0)
    partition_interval_seconds: float = Field(3600.0, gt=0)

    # Budgets
    run_timeout_seconds: float = Field(5.0, gt=0, description="Total budget of one run")
    lock_timeout_seconds: float = Field(1.0, gt=0, description="Bound on any single blocking wait")
    stale_run_seconds: float = Field(600.0, gt=0)

    # Circuit breaker
    breaker_threshold_seconds: float = Field(1.0, gt=0)
    breaker_cooldown_seconds: float = Field(300.0, ge=0)

    # Admission guard
    guard_max_active_units: int = Field(400, ge=0)
    guard_max_blocked_units: int = Field(50, ge=0)

    # Mode controller
    load_upper_threshold: float = Field(0.8, gt=0, le=1)
    load_lower_threshold: float = Field(0.6, ge=0, lt=1)
    emergency_trip_count: int = Field(3, ge=1)
    emergency_trip_window_seconds: float = Field(600.0, gt=0)
    emergency_cooldown_seconds: float = Field(600.0, ge=0)

    # Retention
    retention_days: float = Field(7.0, gt=0)
    warn_retention_days: float = Field(3.0, gt=0)
    critical_retention_days: float = Field(1.0, gt=0)
    partition_lookahead_days: int = Field(3, ge=0)
    run_retention_hours: float = Field(24.0, gt=0)

    # Size governor
    storage_warn_bytes: int = Field(5 * GIB, gt=0)
    storage_critical_bytes: int = Field(10 * GIB, gt=0)
    storage_recover_ratio: float = Field(0.8, gt=0, lt=1)

    # Sampling detail
    activity_top_n: int = Field(25, ge=1)
    query_preview_chars: int = Field(200, ge=1)
    idle_states: List[str] = Field(default_factory=lambda: ["idle", "idle in transaction"])
    tracked_tables: List[str] = Field(default_factory=list)

    # Statement statistics (pg_stat_statements, when installed)
    statements_enabled: bool = True
    statements_top_n: int = Field(50, ge=1)
    statements_min_calls: int = Field(1, ge=0)

    # Change detection
    change_detection: ChangeDetectionStrategy = ChangeDetectionStrategy.LOCK_BASED
    change_detection_fallback: bool = False

    # Health
    freshness_max_age_seconds: float = Field(300.0, gt=0)

    @model_validator(mode="after")
    def check_relationships(self) -> "TelemetrySettings":
        """Thresholds that only make sense relative to each other."""
        if self.storage_warn_bytes >= self.storage_critical_bytes:
            raise ValueError("storage_warn_bytes must be below storage_critical_bytes")
        if self.load_lower_threshold >= self.load_upper_threshold:
            raise ValueError("load_lower_threshold must be below load_upper_threshold")
        if not (
            self.critical_retention_days <= self.warn_retention_days <= self.retention_days
        ):
            raise ValueError(
                "retention windows must satisfy critical <= warn <= retention_days"
            )
        return self

    @property
    def storage_recover_bytes(self) -> int:
        """Size below which an auto-disabled collector re-enables itself."""
        return int(self.storage_critical_bytes * self.storage_recover_ratio)


class ConfigStore:
    """
    Mutable key/value store with typed defaults.

    Overrides are validated as a whole on every write: a write that would
    produce an invalid configuration is rejected and leaves the store
    untouched.
    """

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        self._overrides: Dict[str, Any] = {}
        self._current = TelemetrySettings()
        if overrides:
            self.update(overrides)

    @classmethod
    def from_yaml(cls, path: str, environ: Optional[Dict[str, str]] = None) -> "ConfigStore":
        """
        Build a store from a YAML file plus environment overrides.

        Args:
            path: YAML file with a flat mapping of settings
            environ: Environment to read overrides from (defaults to os.environ)
        """
        config_path = Path(path)
        data: Dict[str, Any] = {}
        if config_path.exists():
            with open(config_path) as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ConfigurationError(f"{path} must contain a mapping of settings")
            data.update(loaded.get("telemetry", loaded))
            logger.info(f"Loaded telemetry config from {config_path}")
        else:
            logger.warning(f"Config file {config_path} not found, using defaults")

        data.update(cls._read_environment(environ if environ is not None else dict(os.environ)))
        return cls(data)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "ConfigStore":
        """Build a store from defaults and ``PG_TELEMETRY_*`` variables."""
        return cls(cls._read_environment(environ if environ is not None else dict(os.environ)))

    @staticmethod
    def _read_environment(environ: Dict[str, str]) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        fields = TelemetrySettings.model_fields
        for name, raw in environ.items():
            if not name.startswith(ENV_PREFIX):
                continue
            key = name[len(ENV_PREFIX) :].lower()
            if key not in fields:
                logger.warning(f"Ignoring unknown telemetry setting {name}")
                continue
            if key in ("idle_states", "tracked_tables"):
                values[key] = [item.strip() for item in raw.split(",") if item.strip()]
            else:
                values[key] = raw
        return values

    def _validate(self, overrides: Dict[str, Any]) -> TelemetrySettings:
        unknown = set(overrides) - set(TelemetrySettings.model_fields)
        if unknown:
            raise ConfigurationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        try:
            return TelemetrySettings(**overrides)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

    def current(self) -> TelemetrySettings:
        """Validated settings for the current run."""
        return self._current

    def get(self, key: str) -> Any:
        if key not in TelemetrySettings.model_fields:
            raise ConfigurationError(f"Unknown setting: {key}")
        return getattr(self._current, key)

    def set(self, key: str, value: Any) -> None:
        self.update({key: value})

    def update(self, values: Dict[str, Any]) -> None:
        merged = {**self._overrides, **values}
        self._current = self._validate(merged)
        self._overrides = merged
        logger.debug(f"Telemetry config updated: {sorted(values)}")

    def reset(self, key: str) -> None:
        """Drop an override so the default applies again."""
        if key not in self._overrides:
            return
        remaining = {k: v for k, v in self._overrides.items() if k != key}
        self._current = self._validate(remaining)
        self._overrides = remaining

    def restore(self, overrides: Dict[str, Any]) -> None:
        """Replace every override at once, e.g. to roll back an earlier update."""
        self._current = self._validate(overrides)
        self._overrides = dict(overrides)

    def as_dict(self) -> Dict[str, Any]:
        return self._current.model_dump(mode="json")

    @property
    def overrides(self) -> Dict[str, Any]:
        return dict(self._overrides)
