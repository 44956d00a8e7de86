"""
pg_telemetry CLI entry point.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI

from pg_telemetry import __version__
from pg_telemetry.api import TelemetryAPI
from pg_telemetry.config import ConfigStore
from pg_telemetry.logging_config import setup_logging as setup_full_logging
from pg_telemetry.observed import PostgresObservedSystem
from pg_telemetry.service import TelemetryService
from pg_telemetry.storage import PostgresStorageBackend


def setup_logging(verbose: bool = False, log_dir: Optional[str] = None) -> None:
    """Setup logging configuration."""
    console_level = "DEBUG" if verbose else "INFO"

    # Determine log directory
    if log_dir is None:
        log_dir = "/var/log/pg-telemetry"
        if not os.access("/var/log", os.W_OK):
            log_dir = str(Path.home() / ".local" / "log" / "pg-telemetry")

    try:
        setup_full_logging(
            log_dir=log_dir,
            console_level=console_level,
            file_level="DEBUG",
            use_json=False,
        )
    except PermissionError:
        # Fall back to basic logging if file logging fails
        logging.basicConfig(
            level=getattr(logging, console_level),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stdout)],
        )


def create_app(service: TelemetryService) -> FastAPI:
    """FastAPI application exposing the telemetry router."""
    app = FastAPI(title="pg_telemetry API", version=__version__)
    app.include_router(TelemetryAPI(service).router)
    return app


def build_service(
    config: ConfigStore, dsn: str, storage_dsn: Optional[str] = None, schema: str = "telemetry"
) -> TelemetryService:
    """
    Wire the PostgreSQL adapters into a service.

    Args:
        config: Live configuration shared by every component
        dsn: Observed database
        storage_dsn: Separate telemetry database, None to store alongside the observed one
        schema: Schema holding telemetry tables
    """
    # Storage on another server does not count against the observed footprint
    own_schema = None if storage_dsn else schema
    observed = PostgresObservedSystem(dsn, own_schema=own_schema, config=config)
    storage = PostgresStorageBackend(storage_dsn or dsn, schema=schema)
    return TelemetryService(observed, storage=storage, config=config)


async def serve(service: TelemetryService, host: str, port: int) -> None:
    """Run the scheduler and the API server until the server exits."""
    logger = logging.getLogger(__name__)
    await service.start()
    try:
        config = uvicorn.Config(create_app(service), host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        logger.info(f"Starting API server on {host}:{port}")
        await server.serve()
    finally:
        await service.stop()


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="pg_telemetry - self-protecting PostgreSQL telemetry collector"
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default="/etc/pg-telemetry/config.yml",
        help="Path to configuration file",
    )

    parser.add_argument(
        "--dsn",
        type=str,
        default=os.environ.get("DATABASE_URL"),
        help="DSN of the observed database (defaults to $DATABASE_URL)",
    )

    parser.add_argument(
        "--storage-dsn",
        type=str,
        default=None,
        help="DSN for telemetry storage (defaults to the observed database)",
    )

    parser.add_argument(
        "--schema", type=str, default="telemetry", help="Schema holding telemetry tables"
    )

    parser.add_argument("--host", type=str, default="127.0.0.1", help="API bind address")
    parser.add_argument("--port", type=int, default=8890, help="API port")
    parser.add_argument("--log-dir", type=str, default=None, help="Directory for log files")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration file and exit"
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging(args.verbose, args.log_dir)
    logger = logging.getLogger(__name__)

    # Handle config validation
    if args.validate_config:
        try:
            ConfigStore.from_yaml(args.config)
            print(f"Configuration valid: {args.config}")
            return 0
        except Exception as e:
            print(f"Configuration invalid: {e}")
            return 1

    if not args.dsn:
        print("No database DSN given (use --dsn or DATABASE_URL)", file=sys.stderr)
        return 2

    try:
        logger.info(f"Loading configuration from {args.config}")
        config = ConfigStore.from_yaml(args.config)

        service = build_service(config, args.dsn, args.storage_dsn, args.schema)
        asyncio.run(serve(service, args.host, args.port))

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        # Print to stderr for systemd journal
        print(f"Error running pg_telemetry: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
