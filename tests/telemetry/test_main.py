"""
Tests for the command line wiring.
"""

from pg_telemetry.__main__ import build_service, create_app
from pg_telemetry.config import ConfigStore


class TestBuildService:
    """Test how the entry point wires the PostgreSQL adapters."""

    def test_shared_database(self):
        config = ConfigStore({"lock_timeout_seconds": 0.25})

        service = build_service(config, "postgresql://app@db/app")

        assert service.observed.own_schema == "telemetry"
        assert service.observed.config is config
        assert service.observed._lock_timeout_ms() == 250
        assert service.storage.dsn == "postgresql://app@db/app"

    def test_separate_storage_database(self):
        service = build_service(
            ConfigStore(), "postgresql://app@db/app", "postgresql://ops@metrics/telemetry", "pg_tel"
        )

        assert service.observed.own_schema is None
        assert service.storage.dsn == "postgresql://ops@metrics/telemetry"
        assert service.storage.schema == "pg_tel"

    def test_create_app_mounts_router(self):
        service = build_service(ConfigStore(), "postgresql://app@db/app")

        paths = {route.path for route in create_app(service).routes}

        assert "/telemetry/health" in paths
        assert "/telemetry/statements" in paths
