# pgcleanup/cli/cleanup.py
"""
CLI commands for the backtest cleanup pipeline.

Usage:
    python -m pgcleanup.cli.cleanup run
    python -m pgcleanup.cli.cleanup run --dry-run
    python -m pgcleanup.cli.cleanup run --now 2024-03-01T02:00:00
    python -m pgcleanup.cli.cleanup status
    python -m pgcleanup.cli.cleanup windows
    python -m pgcleanup.cli.cleanup verify
    python -m pgcleanup.cli.cleanup init-archive

`run` exits with the outcome's exit code (0 success, 10/11 success with
notes, 20-24 aborted and safe to retry, 30 needs manual audit).
"""

import argparse
import logging
import os
import resource
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from pgcleanup.utils.timeutil import format_duration, parse_timestamp, utcnow

load_dotenv()

logger = logging.getLogger(__name__)

# Exit code for configuration and environment problems (no run attempted)
EXIT_CONFIG_ERROR = 2


def load_settings():
    """Load and validate settings, exiting with a readable error if invalid."""
    from pgcleanup.config import get_settings

    try:
        return get_settings()
    except ValidationError as e:
        print("Error: invalid configuration")
        for err in e.errors():
            field = ".".join(str(part) for part in err["loc"]) or "settings"
            print(f"  {field}: {err['msg']}")
        sys.exit(EXIT_CONFIG_ERROR)


def setup_logging(settings) -> None:
    from pgcleanup.logging_config import configure_logging

    configure_logging(
        json_format=settings.LOG_JSON,
        level=settings.LOG_LEVEL,
        log_file=settings.LOG_FILE,
        syslog=settings.SYSLOG_ENABLED,
    )


def apply_memory_limit(max_memory_gb: int) -> None:
    """Cap the address space of this process (soft limit only)."""
    limit = max_memory_gb * 1024 * 1024 * 1024
    _, hard = resource.getrlimit(resource.RLIMIT_AS)
    if hard != resource.RLIM_INFINITY:
        limit = min(limit, hard)
    try:
        resource.setrlimit(resource.RLIMIT_AS, (limit, hard))
    except (ValueError, OSError) as e:
        logger.warning(f"Could not apply memory limit of {max_memory_gb}GB: {e}")


def install_signal_handlers(cancel_event: threading.Event) -> None:
    """SIGTERM/SIGINT stop the run at the next stage boundary."""

    def handler(signum, frame):
        logger.warning(f"Received {signal.Signals(signum).name}, stopping after current stage")
        cancel_event.set()

    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGINT, handler)


def validate_environment(settings) -> list[str]:
    """Return a list of problems that would prevent a clean run."""
    errors = []

    if not os.access(settings.LOCK_DIR, os.W_OK):
        errors.append(f"no write permission for lock directory: {settings.LOCK_DIR}")

    if settings.LOG_FILE:
        log_dir = Path(settings.LOG_FILE).parent
        if not os.access(log_dir, os.W_OK):
            errors.append(f"no write permission for log directory: {log_dir}")

    soft, _ = resource.getrlimit(resource.RLIMIT_AS)
    if soft != resource.RLIM_INFINITY and soft < settings.MAX_MEMORY_GB * 1024**3:
        print(f"WARNING: memory limit may be too restrictive: {soft // 1024}KB")

    return errors


def build_engine(settings):
    from pgcleanup.services.cleanup import MigrationEngine

    return MigrationEngine.from_settings(settings)


def print_result(result) -> None:
    print(f"\n{'DRY RUN - ' if result.dry_run else ''}Cleanup run {result.run_id}\n")
    print(f"Outcome: {result.outcome.value} (exit code {result.exit_code})")
    print(f"Runtime: {format_duration(result.duration_seconds)}")
    print(f"Backup window: {result.windows.backup}")

    print("\nStages:")
    for event in result.events:
        counts = ", ".join(f"{table}={count}" for table, count in event.row_counts.items())
        print(f"  {event.stage}: {event.status.value}" + (f" ({counts})" if counts else ""))

    for label, counts in (
        ("Copied", result.rows_copied),
        ("Deleted", result.rows_deleted),
        ("Purged", result.rows_purged),
    ):
        if counts:
            print(f"\n{label}:")
            for table, count in counts.items():
                print(f"  {table}: {count}")

    if result.error:
        print(f"\nError: {result.error}")
    if not result.outcome.retry_safe:
        print("\nMain database requires manual verification before the next run")
    print()


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


def cmd_run(args):
    """Run the pipeline once under the run lock."""
    from pgcleanup.services.cleanup import LockHeldError, Outcome, run_lock

    settings = load_settings()
    setup_logging(settings)
    apply_memory_limit(settings.MAX_MEMORY_GB)

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)

    engine = build_engine(settings)
    try:
        with run_lock(settings.LOCK_NAME, settings.LOCK_DIR):
            result = engine.run(now=args.now, dry_run=args.dry_run, cancel_event=cancel_event)
    except LockHeldError as e:
        logger.error(str(e), extra={"outcome": Outcome.ABORTED_LOCK_HELD.value})
        print(f"Error: {e}")
        sys.exit(Outcome.ABORTED_LOCK_HELD.exit_code)

    print_result(result)
    sys.exit(result.exit_code)


def cmd_status(args):
    """Show configuration, windows and per-window row counts in both stores."""
    from pgcleanup.services.cleanup import CleanupError, compute_windows
    from pgcleanup.services.cleanup.store import created_in

    settings = load_settings()
    engine = build_engine(settings)
    windows = compute_windows(utcnow(), settings.RECENT_DAYS, settings.BACKUP_DAYS, settings.PURGE_DAYS)

    print("\n=== Cleanup Status ===\n")
    print(f"Schema: {settings.SCHEMA or '(default)'}")
    print(f"  Recent days: {settings.RECENT_DAYS}")
    print(f"  Backup days: {settings.BACKUP_DAYS}")
    print(f"  Purge days: {settings.PURGE_DAYS}")
    print(f"  Max runtime: {settings.MAX_RUNTIME_MINUTES} minutes")
    print(f"  Batch size: {settings.BATCH_SIZE}")

    print("\nWindows:")
    print(f"  recent:   {windows.recent}")
    print(f"  backup:   {windows.backup}")
    print(f"  obsolete: {windows.obsolete}")

    failed = False
    for store in (engine.main, engine.archive):
        print(f"\n{store.name.capitalize()} database:")
        try:
            for label, window in (
                ("recent", windows.recent),
                ("backup", windows.backup),
                ("obsolete", windows.obsolete),
            ):
                counts = store.counts(created_in(window))
                rendered = ", ".join(f"{table}={count}" for table, count in counts.items())
                print(f"  {label}: {rendered}")
        except CleanupError as e:
            print(f"  unavailable: {e}")
            failed = True
    print()

    if failed:
        sys.exit(1)


def cmd_windows(args):
    """Print the windows a run at --now would use."""
    from pgcleanup.services.cleanup import compute_windows

    settings = load_settings()
    windows = compute_windows(args.now or utcnow(), settings.RECENT_DAYS, settings.BACKUP_DAYS, settings.PURGE_DAYS)

    print(f"now:          {windows.now.isoformat()}")
    print(f"recent:       {windows.recent}")
    print(f"backup:       {windows.backup}")
    print(f"obsolete:     {windows.obsolete}")
    print(f"purge cutoff: {windows.purge_cutoff.isoformat()}")


def cmd_verify(args):
    """Check the archive database and the local environment."""
    from pgcleanup.services.cleanup import CleanupError

    settings = load_settings()
    errors = validate_environment(settings)
    for error in errors:
        print(f"ERROR: {error}")

    engine = build_engine(settings)
    try:
        engine.archive.verify_schema()
        print("Archive database: reachable, schema and tables present")
    except CleanupError as e:
        print(f"ERROR: {e}")
        errors.append(str(e))

    if errors:
        print("Validation failed")
        sys.exit(1)
    print("All checks passed")


def cmd_init_archive(args):
    """Create the schema and tables in the archive database if missing."""
    from sqlalchemy.exc import SQLAlchemyError

    from pgcleanup.database import create_store_engine, init_db

    settings = load_settings()
    archive_engine = create_store_engine(
        settings.ARCHIVE_DATABASE_URL,
        schema=settings.SCHEMA,
        connect_timeout_seconds=settings.CONNECT_TIMEOUT_SECONDS,
    )
    try:
        init_db(archive_engine, schema=settings.SCHEMA)
    except SQLAlchemyError as e:
        print(f"Error: could not initialize archive database: {e}")
        sys.exit(1)
    print(f"Archive database initialized (schema: {settings.SCHEMA or '(default)'})")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        description="Backtest Results Cleanup CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Preview a run without writing anything
  python -m pgcleanup.cli.cleanup run --dry-run

  # Run the pipeline (cron entry point)
  python -m pgcleanup.cli.cleanup run

  # Show row counts per window in both databases
  python -m pgcleanup.cli.cleanup status

  # Check archive connectivity and permissions
  python -m pgcleanup.cli.cleanup verify
        """,
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run command
    run_parser = subparsers.add_parser("run", help="Run the cleanup pipeline once")
    run_parser.add_argument("--now", type=parse_timestamp, default=None, help="Reference time (ISO-8601, UTC)")
    run_parser.add_argument("--dry-run", action="store_true", help="Count only, don't copy or delete")
    run_parser.set_defaults(func=cmd_run)

    # status command
    status_parser = subparsers.add_parser("status", help="Show per-window row counts")
    status_parser.set_defaults(func=cmd_status)

    # windows command
    windows_parser = subparsers.add_parser("windows", help="Print computed windows")
    windows_parser.add_argument("--now", type=parse_timestamp, default=None, help="Reference time (ISO-8601, UTC)")
    windows_parser.set_defaults(func=cmd_windows)

    # verify command
    verify_parser = subparsers.add_parser("verify", help="Check archive database and environment")
    verify_parser.set_defaults(func=cmd_verify)

    # init-archive command
    init_parser = subparsers.add_parser("init-archive", help="Create archive schema and tables")
    init_parser.set_defaults(func=cmd_init_archive)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
