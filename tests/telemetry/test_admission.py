"""
Unit tests for the admission guard.
"""

from pg_telemetry.admission import AdmissionGuard, LoadReading


class TestLoadReading:
    def test_load_ratio(self):
        assert LoadReading(active_units=40, capacity=100).load_ratio == 0.4

    def test_load_ratio_unknown(self):
        assert LoadReading(active_units=40).load_ratio is None
        assert LoadReading(capacity=100).load_ratio is None
        assert LoadReading(active_units=1, capacity=0).load_ratio is None


class TestAdmissionGuard:
    """Test per-step admission decisions."""

    def test_activity_allowed_under_limit(self, context):
        guard = AdmissionGuard(context)
        assert guard.check_activity(LoadReading(active_units=400)) is None

    def test_activity_denied_over_limit(self, context):
        guard = AdmissionGuard(context)
        reason = guard.check_activity(LoadReading(active_units=401))
        assert reason == "guard: 401 active units > 400"

    def test_lock_graph_denied_over_limit(self, context, config):
        config.set("guard_max_blocked_units", 3)
        guard = AdmissionGuard(context)
        assert guard.check_lock_graph(LoadReading(blocked_units=3)) is None
        assert guard.check_lock_graph(LoadReading(blocked_units=4)).startswith("guard:")

    def test_unavailable_count_denies(self, context):
        guard = AdmissionGuard(context)
        reading = LoadReading()
        assert "unavailable" in guard.check_activity(reading)
        assert "unavailable" in guard.check_lock_graph(reading)
