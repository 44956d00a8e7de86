"""
Storage backends for telemetry data.
"""

from pg_telemetry.storage.governor import SizeGovernor, apply_retention
from pg_telemetry.storage.memory import MemoryStorageBackend
from pg_telemetry.storage.partitions import pretty_bytes
from pg_telemetry.storage.postgres import PostgresStorageBackend

__all__ = [
    "MemoryStorageBackend",
    "PostgresStorageBackend",
    "SizeGovernor",
    "apply_retention",
    "pretty_bytes",
]
