"""
Partition arithmetic.

A partition owns one UTC calendar day. Names are stable so that every
backend (and every process sharing a database) agrees on them.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Tuple

PARTITION_SPAN = timedelta(days=1)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def partition_bounds(at: datetime) -> Tuple[datetime, datetime]:
    """[start, end) of the partition that holds ``at``."""
    at = as_utc(at)
    start = at.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + PARTITION_SPAN


def partition_name(start: datetime) -> str:
    return f"p{as_utc(start):%Y%m%d}"


def partitions_ahead(now: datetime, lookahead_days: int) -> List[Tuple[str, datetime, datetime]]:
    """Partitions covering today and the next ``lookahead_days`` days."""
    start, _ = partition_bounds(now)
    result = []
    for offset in range(lookahead_days + 1):
        day = start + offset * PARTITION_SPAN
        result.append((partition_name(day), day, day + PARTITION_SPAN))
    return result


def retention_cutoff(now: datetime, retention_days: float) -> datetime:
    """Timestamp before which data has expired."""
    return as_utc(now) - timedelta(days=retention_days)


def pretty_bytes(num_bytes: float) -> str:
    """Human readable size (B, KB, MB, GB)."""
    if num_bytes >= 1073741824:
        return f"{num_bytes / 1073741824:.2f} GB"
    if num_bytes >= 1048576:
        return f"{num_bytes / 1048576:.2f} MB"
    if num_bytes >= 1024:
        return f"{num_bytes / 1024:.2f} KB"
    return f"{int(num_bytes)} B"
