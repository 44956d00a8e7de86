"""
Unit tests for partition arithmetic.
"""

from datetime import datetime, timedelta, timezone

from pg_telemetry.storage.partitions import (
    as_utc,
    partition_bounds,
    partition_name,
    partitions_ahead,
    pretty_bytes,
    retention_cutoff,
)


class TestPartitionArithmetic:
    """Test day partitions."""

    def test_as_utc_treats_naive_as_utc(self):
        naive = datetime(2026, 3, 2, 12, 0)
        assert as_utc(naive) == datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def test_as_utc_converts_offsets(self):
        plus_two = timezone(timedelta(hours=2))
        value = datetime(2026, 3, 2, 1, 0, tzinfo=plus_two)
        assert as_utc(value) == datetime(2026, 3, 1, 23, 0, tzinfo=timezone.utc)

    def test_bounds_cover_one_utc_day(self):
        start, end = partition_bounds(datetime(2026, 3, 2, 17, 45, tzinfo=timezone.utc))
        assert start == datetime(2026, 3, 2, tzinfo=timezone.utc)
        assert end - start == timedelta(days=1)

    def test_name_is_stable(self):
        assert partition_name(datetime(2026, 3, 2, 5, tzinfo=timezone.utc)) == "p20260302"

    def test_partitions_ahead_includes_today(self):
        ahead = partitions_ahead(datetime(2026, 3, 2, 23, 59, tzinfo=timezone.utc), 2)
        assert [name for name, _, _ in ahead] == ["p20260302", "p20260303", "p20260304"]

    def test_retention_cutoff(self):
        now = datetime(2026, 3, 8, tzinfo=timezone.utc)
        assert retention_cutoff(now, 7) == datetime(2026, 3, 1, tzinfo=timezone.utc)

    def test_pretty_bytes(self):
        assert pretty_bytes(512) == "512 B"
        assert pretty_bytes(2048) == "2.00 KB"
        assert pretty_bytes(5 * 1048576) == "5.00 MB"
        assert pretty_bytes(3 * 1073741824) == "3.00 GB"
