"""
Structured JSON logging for cleanup run observability.

Provides structured logging with run IDs for correlating log lines across
pipeline stages, plus a stage context manager that records timing.
"""

import json
import logging
import logging.handlers
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from pathlib import Path

# Context variables for run correlation
run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)
stage_var: ContextVar[str | None] = ContextVar("stage", default=None)

SYSLOG_TAG = "psql-cleanup"

# Log file rolls over to <file>.1 past this size
LOG_MAX_BYTES = 100 * 1024 * 1024
LOG_BACKUP_COUNT = 1

# Extra fields copied from log records into the JSON payload
EXTRA_KEYS = (
    "event",
    "duration_ms",
    "table",
    "rows",
    "main_count",
    "archive_count",
    "expected",
    "actual",
    "outcome",
    "exit_code",
    "window_start",
    "window_end",
    "cutoff",
    "lock_path",
)


# -----------------------------------------------------------------------------
# JSON Formatter
# -----------------------------------------------------------------------------


class JSONFormatter(logging.Formatter):
    """
    Format log records as single-line JSON.

    Output format:
    {"timestamp": "...", "level": "INFO", "message": "...", "run_id": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        run_id = run_id_var.get()
        if run_id:
            log_data["run_id"] = run_id

        stage = getattr(record, "stage", None) or stage_var.get()
        if stage:
            log_data["stage"] = stage

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_KEYS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data, default=str)


def configure_logging(
    json_format: bool = True,
    level: str = "INFO",
    log_file: str | None = None,
    syslog: bool = False,
    max_bytes: int = LOG_MAX_BYTES,
) -> None:
    """
    Configure logging for cron runs or local development.

    Args:
        json_format: If True, use JSON format. If False, use human-readable format.
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file to append to (skipped if its directory is not writable)
        syslog: Also forward records to the local syslog daemon
        max_bytes: Rotate the log file once it grows past this size
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file:
        try:
            handlers.append(
                logging.handlers.RotatingFileHandler(
                    Path(log_file), maxBytes=max_bytes, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
                )
            )
        except OSError as e:
            # Logging is not configured yet; report on stderr and keep stdout logging
            print(f"WARNING: cannot open log file {log_file}: {e}", file=sys.stderr)

    if syslog:
        try:
            syslog_handler = logging.handlers.SysLogHandler(address="/dev/log")
            syslog_handler.ident = f"{SYSLOG_TAG}: "
            handlers.append(syslog_handler)
        except OSError as e:
            print(f"WARNING: syslog unavailable: {e}", file=sys.stderr)

    for handler in handlers:
        handler.setLevel(getattr(logging, level.upper()))
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("alembic").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# -----------------------------------------------------------------------------
# Context Managers
# -----------------------------------------------------------------------------


@contextmanager
def log_run(run_id: str):
    """Bind run_id to every record logged inside the block."""
    token = run_id_var.set(run_id)
    try:
        yield
    finally:
        run_id_var.reset(token)


@contextmanager
def log_stage(stage: str, run_id: str | None = None):
    """
    Context manager for stage-level logging.

    Logs stage start and end with duration, automatically tracks timing.

    Usage:
        with log_stage("copying", run_id=ctx.run_id):
            # ... stage logic ...
    """
    if run_id:
        run_id_var.set(run_id)
    token = stage_var.set(stage)

    start_time = time.time()
    logger = logging.getLogger("pgcleanup.stage")

    logger.info(f"Stage {stage} started", extra={"event": "stage_start", "stage": stage})

    try:
        yield
        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Stage {stage} completed",
            extra={
                "event": "stage_complete",
                "stage": stage,
                "duration_ms": duration_ms,
            },
        )
    except Exception as e:
        duration_ms = int((time.time() - start_time) * 1000)
        logger.error(
            f"Stage {stage} failed: {e}",
            extra={
                "event": "stage_failed",
                "stage": stage,
                "duration_ms": duration_ms,
            },
        )
        raise
    finally:
        stage_var.reset(token)
