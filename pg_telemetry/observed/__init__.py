"""
Adapters for observed systems.
"""

from pg_telemetry.observed.postgres import PostgresObservedSystem

__all__ = ["PostgresObservedSystem"]
