"""
Telemetry collectors.
"""

from pg_telemetry.collectors.base import BaseCollector, RunBudget
from pg_telemetry.collectors.maintenance import MaintenanceTasks
from pg_telemetry.collectors.sampler import Sampler
from pg_telemetry.collectors.snapshotter import Snapshotter

__all__ = [
    "BaseCollector",
    "RunBudget",
    "MaintenanceTasks",
    "Sampler",
    "Snapshotter",
]
