"""
Exceptions raised synchronously to callers.

Collection-time problems are never raised; they are recorded on the
collection run instead. Only configuration and storage errors surface
here.
"""


class TelemetryError(Exception):
    """Base class for telemetry errors."""


class ConfigurationError(TelemetryError, ValueError):
    """Invalid configuration value or unsupported environment."""


class InvalidModeError(ConfigurationError):
    """Mode name is not one of normal, light, emergency."""

    def __init__(self, mode: str):
        super().__init__(f"Invalid mode: {mode}. Must be normal, light, or emergency.")
        self.mode = mode


class UnsupportedEnvironmentError(ConfigurationError):
    """The observed system cannot provide what the configuration asks for."""


class StorageError(TelemetryError):
    """The storage engine could not complete an operation."""


class InvalidWindowError(TelemetryError, ValueError):
    """A query window whose start is after its end."""

    def __init__(self, start, end):
        super().__init__(f"Invalid window: start {start} is after end {end}")
        self.start = start
        self.end = end
