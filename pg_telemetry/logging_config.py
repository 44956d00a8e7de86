"""
Logging configuration for the telemetry collector.

File-based logging with rotation, a colourised console, and dedicated
streams for mode transitions and storage governor actions.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path

TRANSITIONS_LOGGER = "pg_telemetry.transitions"
GOVERNOR_LOGGER = "pg_telemetry.governor"

# Extra fields copied into structured records when present
EXTRA_FIELDS = ("task", "run_id", "duration_ms", "from_mode", "to_mode")


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON for better parsing."""
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in EXTRA_FIELDS:
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter for console and file logs."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False):
        """Initialize formatter with optional color support."""
        self.use_colors = use_colors
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format with optional colors for console output."""
        if self.use_colors and record.levelname in self.COLORS:
            # Copy so other handlers see the plain level name
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
        return super().format(record)


def _dedicated_stream(
    name: str,
    path: Path,
    formatter: logging.Formatter,
    max_bytes: int,
    backup_count: int,
) -> logging.Logger:
    stream = logging.getLogger(name)
    for handler in list(stream.handlers):
        stream.removeHandler(handler)
        handler.close()
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count
    )
    handler.setFormatter(formatter)
    stream.addHandler(handler)
    stream.setLevel(logging.DEBUG)
    stream.propagate = False  # Don't duplicate to root logger
    return stream


def setup_logging(
    log_dir: str = "/var/log/pg-telemetry",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    use_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 10,
) -> None:
    """
    Configure logging for the telemetry collector.

    Args:
        log_dir: Directory for log files
        console_level: Console logging level
        file_level: File logging level
        use_json: Use JSON formatting for files
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # Console handler with color
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, console_level))
    console_handler.setFormatter(HumanReadableFormatter(use_colors=True))
    root_logger.addHandler(console_handler)

    file_formatter = StructuredFormatter() if use_json else HumanReadableFormatter()

    # Main log
    main_handler = logging.handlers.RotatingFileHandler(
        log_path / "telemetry.log", maxBytes=max_bytes, backupCount=backup_count
    )
    main_handler.setLevel(getattr(logging, file_level))
    main_handler.setFormatter(file_formatter)
    root_logger.addHandler(main_handler)

    # Error-only log for monitoring
    error_handler = logging.handlers.RotatingFileHandler(
        log_path / "error.log", maxBytes=max_bytes, backupCount=backup_count
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_formatter)
    root_logger.addHandler(error_handler)

    _dedicated_stream(
        TRANSITIONS_LOGGER, log_path / "mode-transitions.log", file_formatter, max_bytes, backup_count
    )
    _dedicated_stream(
        GOVERNOR_LOGGER, log_path / "storage-governor.log", file_formatter, max_bytes, backup_count
    )

    # Third-party loggers to WARNING to reduce noise
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.WARNING)

    root_logger.info(
        f"Logging initialized - Console: {console_level}, File: {file_level}, "
        f"Directory: {log_dir}, JSON: {use_json}"
    )
