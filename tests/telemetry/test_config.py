"""
Unit tests for the telemetry configuration store.
"""

import pytest

from pg_telemetry.config import ConfigStore, TelemetrySettings
from pg_telemetry.exceptions import ConfigurationError
from pg_telemetry.schemas import ChangeDetectionStrategy, TelemetryMode


class TestTelemetrySettings:
    """Test defaults and relationships."""

    def test_defaults(self):
        settings = TelemetrySettings()

        assert settings.enabled is True
        assert settings.mode == TelemetryMode.NORMAL
        assert settings.sample_interval_normal == 30
        assert settings.snapshot_interval_seconds == 300
        assert settings.breaker_threshold_seconds == 1
        assert settings.retention_days == 7
        assert settings.change_detection == ChangeDetectionStrategy.LOCK_BASED
        assert settings.idle_states == ["idle", "idle in transaction"]

    def test_recover_bytes(self):
        settings = TelemetrySettings(storage_warn_bytes=100, storage_critical_bytes=1000)
        assert settings.storage_recover_bytes == 800

    def test_warn_must_be_below_critical(self):
        with pytest.raises(ValueError):
            TelemetrySettings(storage_warn_bytes=2000, storage_critical_bytes=1000)

    def test_lower_must_be_below_upper(self):
        with pytest.raises(ValueError):
            TelemetrySettings(load_lower_threshold=0.9, load_upper_threshold=0.8)

    def test_retention_windows_ordered(self):
        with pytest.raises(ValueError):
            TelemetrySettings(retention_days=2, warn_retention_days=3)


class TestConfigStore:
    """Test runtime reads and writes."""

    def test_set_and_get(self):
        store = ConfigStore()
        store.set("sample_interval_normal", 10)

        assert store.get("sample_interval_normal") == 10
        assert store.current().sample_interval_normal == 10
        assert store.overrides == {"sample_interval_normal": 10}

    def test_unknown_key(self):
        store = ConfigStore()
        with pytest.raises(ConfigurationError):
            store.set("sample_every", 10)
        with pytest.raises(ConfigurationError):
            store.get("sample_every")

    def test_rejected_update_leaves_store_unchanged(self):
        store = ConfigStore({"retention_days": 5})
        before = store.current()

        with pytest.raises(ConfigurationError):
            store.update({"retention_days": 10, "breaker_threshold_seconds": -1})

        assert store.current() is before
        assert store.overrides == {"retention_days": 5}

    def test_relationship_checked_against_merged_values(self):
        store = ConfigStore({"storage_warn_bytes": 100, "storage_critical_bytes": 200})
        with pytest.raises(ConfigurationError):
            store.set("storage_critical_bytes", 50)

    def test_reset(self):
        store = ConfigStore({"mode": "light"})
        assert store.current().mode == TelemetryMode.LIGHT

        store.reset("mode")
        store.reset("mode")

        assert store.current().mode == TelemetryMode.NORMAL
        assert store.overrides == {}

    def test_restore_replaces_every_override(self):
        store = ConfigStore({"retention_days": 5})
        previous = store.overrides
        store.update({"retention_days": 6, "activity_top_n": 3})

        store.restore(previous)

        assert store.overrides == {"retention_days": 5}
        assert store.get("activity_top_n") == 25

    def test_as_dict_is_json_ready(self):
        data = ConfigStore({"mode": "emergency"}).as_dict()
        assert data["mode"] == "emergency"
        assert data["change_detection"] == "lock_based"


class TestConfigSources:
    """Test YAML and environment loading."""

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("telemetry:\n  retention_days: 14\n  tracked_tables:\n    - orders\n")

        store = ConfigStore.from_yaml(str(path), environ={})

        assert store.get("retention_days") == 14
        assert store.get("tracked_tables") == ["orders"]

    def test_from_yaml_flat_mapping(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("snapshot_interval_seconds: 120\n")

        assert ConfigStore.from_yaml(str(path), environ={}).get("snapshot_interval_seconds") == 120

    def test_missing_yaml_uses_defaults(self, tmp_path):
        store = ConfigStore.from_yaml(str(tmp_path / "missing.yml"), environ={})
        assert store.overrides == {}

    def test_yaml_must_be_mapping(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("- one\n- two\n")
        with pytest.raises(ConfigurationError):
            ConfigStore.from_yaml(str(path), environ={})

    def test_environment_overrides_yaml(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("retention_days: 14\n")

        store = ConfigStore.from_yaml(str(path), environ={"PG_TELEMETRY_RETENTION_DAYS": "10"})

        assert store.get("retention_days") == 10

    def test_from_env(self):
        store = ConfigStore.from_env(
            {
                "PG_TELEMETRY_ENABLED": "false",
                "PG_TELEMETRY_IDLE_STATES": "idle, idle in transaction (aborted)",
                "PG_TELEMETRY_NOT_A_SETTING": "1",
                "HOME": "/root",
            }
        )

        assert store.get("enabled") is False
        assert store.get("idle_states") == ["idle", "idle in transaction (aborted)"]
        assert "not_a_setting" not in store.overrides

    def test_change_detection_names(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("change_detection: pattern_based\n")

        store = ConfigStore.from_yaml(str(path), environ={})
        assert store.get("change_detection") == ChangeDetectionStrategy.PATTERN_BASED

        store = ConfigStore.from_env({"PG_TELEMETRY_CHANGE_DETECTION": "lock_based"})
        assert store.get("change_detection") == ChangeDetectionStrategy.LOCK_BASED

        with pytest.raises(ConfigurationError):
            ConfigStore({"change_detection": "lock"})
