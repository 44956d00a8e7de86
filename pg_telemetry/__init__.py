"""pg_telemetry - Self-protecting telemetry collector for PostgreSQL."""

__version__ = "0.1.0"

from .config import ConfigStore, TelemetrySettings
from .context import TelemetryContext
from .exceptions import (
    ConfigurationError,
    InvalidModeError,
    InvalidWindowError,
    StorageError,
    TelemetryError,
    UnsupportedEnvironmentError,
)
from .service import TelemetryService

__all__ = [
    "ConfigStore",
    "ConfigurationError",
    "InvalidModeError",
    "InvalidWindowError",
    "StorageError",
    "TelemetryContext",
    "TelemetryError",
    "TelemetryService",
    "TelemetrySettings",
    "UnsupportedEnvironmentError",
]
