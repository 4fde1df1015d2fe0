# pgcleanup/services/cleanup/engine.py
"""
Migration engine: moves the backup window from main to archive.

State machine:

    INIT -> VERIFYING_TARGET -> CHECKING_IDEMPOTENCY -> (SKIPPED | SELECTING)
         -> COPYING -> VALIDATING -> DELETING -> PURGING -> DONE

- ABORTED is reachable from every state before DELETING commits. Failures
  there leave both databases as they were (rows copied by this run are
  removed from the archive again).
- DELETING failures are fatal and not retry-safe.
- DEGRADED is reachable only from PURGING: purge failure keeps the
  committed migration and is retried by the next run.

All per-run state lives in a RunContext; nothing is kept on the engine
between runs.
"""

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pgcleanup.logging_config import log_run, log_stage
from pgcleanup.models import COPY_ORDER, PURGE_ORDER
from pgcleanup.services.cleanup.errors import (
    CleanupError,
    DeleteMismatchError,
    Outcome,
    PurgeError,
    RunInterrupted,
    StoreError,
    TargetUnreachableError,
    ValidationMismatchError,
)
from pgcleanup.services.cleanup.guard import IdempotencyGuard
from pgcleanup.services.cleanup.reporter import PrometheusTextfileSink, Reporter, StageEvent, StageStatus
from pgcleanup.services.cleanup.store import StoreClient, created_at_or_before, created_in
from pgcleanup.services.cleanup.windows import RunWindows, compute_windows
from pgcleanup.utils.timeutil import utcnow

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from pgcleanup.config import Settings

logger = logging.getLogger(__name__)


class MigrationState(str, Enum):
    INIT = "init"
    VERIFYING_TARGET = "verifying_target"
    CHECKING_IDEMPOTENCY = "checking_idempotency"
    SKIPPED = "skipped"
    SELECTING = "selecting"
    COPYING = "copying"
    VALIDATING = "validating"
    DELETING = "deleting"
    PURGING = "purging"
    DONE = "done"
    ABORTED = "aborted"
    DEGRADED = "degraded"


# Outcome for a failure raised while in each pre-delete state
ABORT_OUTCOMES = {
    MigrationState.INIT: Outcome.ABORTED_TARGET_UNREACHABLE,
    MigrationState.VERIFYING_TARGET: Outcome.ABORTED_TARGET_UNREACHABLE,
    MigrationState.CHECKING_IDEMPOTENCY: Outcome.ABORTED_TARGET_UNREACHABLE,
    MigrationState.SELECTING: Outcome.ABORTED_COPY_FAILED,
    MigrationState.COPYING: Outcome.ABORTED_COPY_FAILED,
    MigrationState.VALIDATING: Outcome.ABORTED_VALIDATION_FAILED,
}

# Outcome recorded when an exception outside the cleanup taxonomy escapes a stage
UNEXPECTED_OUTCOMES = {
    **ABORT_OUTCOMES,
    MigrationState.DELETING: Outcome.FATAL_DELETE_MISMATCH,
    MigrationState.PURGING: Outcome.DEGRADED_PURGE_FAILED,
}


@dataclass
class RunContext:
    """Everything one run knows. Created per run, discarded afterwards."""

    run_id: str
    windows: RunWindows
    main: StoreClient
    archive: StoreClient
    reporter: Reporter
    dry_run: bool = False
    deadline: float | None = None  # time.monotonic() value
    cancel_event: threading.Event = field(default_factory=threading.Event)

    state: MigrationState = MigrationState.INIT
    history: list[MigrationState] = field(default_factory=list)
    selected_keys: list[str] = field(default_factory=list)
    copied_tables: list[str] = field(default_factory=list)
    validated_counts: dict[str, int] = field(default_factory=dict)
    rows_copied: dict[str, int] = field(default_factory=dict)
    rows_deleted: dict[str, int] = field(default_factory=dict)
    rows_purged: dict[str, int] = field(default_factory=dict)

    def transition(self, state: MigrationState) -> None:
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.history.append(state)
        self.state = state

    def check_continue(self) -> None:
        """Stop between stages on signal or deadline."""
        if self.cancel_event.is_set():
            raise RunInterrupted("termination signal received")
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise RunInterrupted("max runtime exceeded")


@dataclass
class MigrationResult:
    """Final report of a run."""

    run_id: str
    outcome: Outcome
    final_state: MigrationState
    windows: RunWindows
    dry_run: bool = False
    duration_seconds: float = 0.0
    events: list[StageEvent] = field(default_factory=list)
    history: list[MigrationState] = field(default_factory=list)
    rows_copied: dict[str, int] = field(default_factory=dict)
    rows_deleted: dict[str, int] = field(default_factory=dict)
    rows_purged: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    @property
    def success(self) -> bool:
        return self.outcome.succeeded

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "run_id": self.run_id,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "retry_safe": self.outcome.retry_safe,
            "final_state": self.final_state.value,
            "dry_run": self.dry_run,
            "duration_seconds": round(self.duration_seconds, 3),
            "windows": self.windows.to_dict(),
            "rows_copied": self.rows_copied,
            "rows_deleted": self.rows_deleted,
            "rows_purged": self.rows_purged,
            "events": [event.to_dict() for event in self.events],
            "error": self.error,
        }


class MigrationEngine:
    """
    Orchestrates one migration run between a main and an archive store.

    Args:
        main: Store holding operational rows
        archive: Store receiving the backup window
        recent_days: Rows newer than this stay in main
        backup_days: Lower edge of the backup window
        purge_days: Archive rows at or beyond this age are purged
        reporter_factory: Builds a fresh Reporter per run
        max_runtime_seconds: Abort between stages after this long
        clock: Returns the run's `now` when none is given
    """

    def __init__(
        self,
        main: StoreClient,
        archive: StoreClient,
        recent_days: int = 7,
        backup_days: int = 14,
        purge_days: int = 14,
        reporter_factory: Callable[[], Reporter] = Reporter,
        max_runtime_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.main = main
        self.archive = archive
        self.recent_days = recent_days
        self.backup_days = backup_days
        self.purge_days = purge_days
        self.reporter_factory = reporter_factory
        self.max_runtime_seconds = max_runtime_seconds
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        main_engine: "Engine | None" = None,
        archive_engine: "Engine | None" = None,
    ) -> "MigrationEngine":
        """Build stores, reporter and limits from configuration."""
        from pgcleanup.database import engines_from_settings

        if main_engine is None or archive_engine is None:
            main_engine, archive_engine = engines_from_settings(settings)

        metrics_path = settings.metrics_path
        return cls(
            main=StoreClient(main_engine, "main", schema=settings.SCHEMA, batch_size=settings.BATCH_SIZE),
            archive=StoreClient(archive_engine, "archive", schema=settings.SCHEMA, batch_size=settings.BATCH_SIZE),
            recent_days=settings.RECENT_DAYS,
            backup_days=settings.BACKUP_DAYS,
            purge_days=settings.PURGE_DAYS,
            reporter_factory=lambda: Reporter([PrometheusTextfileSink(metrics_path)]),
            max_runtime_seconds=settings.MAX_RUNTIME_MINUTES * 60,
        )

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def run(
        self,
        now: datetime | None = None,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> MigrationResult:
        """
        Execute the full pipeline once.

        Never raises for a pipeline failure; the outcome is on the result.
        Any other exception is reported as a failed run, then re-raised.
        """
        started = time.monotonic()
        ctx = RunContext(
            run_id=uuid.uuid4().hex[:12],
            windows=compute_windows(now or self.clock(), self.recent_days, self.backup_days, self.purge_days),
            main=self.main,
            archive=self.archive,
            reporter=self.reporter_factory(),
            dry_run=dry_run,
            deadline=started + self.max_runtime_seconds if self.max_runtime_seconds else None,
            cancel_event=cancel_event or threading.Event(),
        )

        with log_run(ctx.run_id):
            logger.info(
                f"Cleanup run starting (dry_run={dry_run}): "
                f"recent={self.recent_days}d backup={self.backup_days}d purge={self.purge_days}d, "
                f"backup window {ctx.windows.backup}",
                extra={
                    "event": "run_start",
                    "window_start": ctx.windows.backup.start,
                    "window_end": ctx.windows.backup.end,
                    "cutoff": ctx.windows.purge_cutoff,
                },
            )
            try:
                outcome, error = self._drive(ctx)
            except Exception as e:
                outcome, error = self._record_unexpected(ctx, e)
                ctx.reporter.finish(self._result(ctx, outcome, error, started))
                raise

            result = self._result(ctx, outcome, error, started)
            ctx.reporter.finish(result)
        return result

    def _result(self, ctx: RunContext, outcome: Outcome, error: str | None, started: float) -> MigrationResult:
        return MigrationResult(
            run_id=ctx.run_id,
            outcome=outcome,
            final_state=ctx.state,
            windows=ctx.windows,
            dry_run=ctx.dry_run,
            duration_seconds=time.monotonic() - started,
            events=list(ctx.reporter.events),
            history=list(ctx.history),
            rows_copied=dict(ctx.rows_copied),
            rows_deleted=dict(ctx.rows_deleted),
            rows_purged=dict(ctx.rows_purged),
            error=error,
        )

    def _record_unexpected(self, ctx: RunContext, exc: Exception) -> tuple[Outcome, str]:
        """
        Map an exception outside the cleanup taxonomy onto an outcome.

        The caller re-raises; this only cleans the archive (before delete)
        and leaves a failure result for the reporter.
        """
        failed_in = ctx.state
        outcome = UNEXPECTED_OUTCOMES.get(failed_in, Outcome.FATAL_DELETE_MISMATCH)
        error = f"unexpected error in {failed_in.value}: {exc!r}"
        if failed_in in ABORT_OUTCOMES:
            residue = self._discard_partial_copy(ctx)
            if residue:
                error = f"{error}; {residue}"
        logger.exception(f"Run failed unexpectedly in {failed_in.value}", extra={"outcome": outcome.value})
        if outcome == Outcome.DEGRADED_PURGE_FAILED:
            ctx.transition(MigrationState.DEGRADED)
        else:
            ctx.transition(MigrationState.ABORTED)
        return outcome, error

    def _drive(self, ctx: RunContext) -> tuple[Outcome, str | None]:
        """Walk the state machine and map failures onto outcomes."""
        try:
            self._verify_target(ctx)
            ctx.check_continue()

            if self._check_idempotency(ctx):
                ctx.transition(MigrationState.SKIPPED)
                return Outcome.SKIPPED_ALREADY_MIGRATED, None

            ctx.check_continue()
            self._select(ctx)
            ctx.check_continue()
            self._copy(ctx)
            ctx.check_continue()
            self._validate(ctx)
            ctx.check_continue()
        except CleanupError as e:
            failed_in = ctx.state
            outcome = Outcome.ABORTED_INTERRUPTED if isinstance(e, RunInterrupted) else ABORT_OUTCOMES[failed_in]
            error = str(e)
            residue = self._discard_partial_copy(ctx)
            if residue:
                error = f"{error}; {residue}"
            logger.error(f"Run aborted in {failed_in.value}: {error}", extra={"outcome": outcome.value})
            ctx.transition(MigrationState.ABORTED)
            return outcome, error

        try:
            self._delete(ctx)
        except CleanupError as e:
            logger.error(
                f"Main database cleanup failed, manual verification required: {e}",
                extra={"outcome": Outcome.FATAL_DELETE_MISMATCH.value},
            )
            ctx.transition(MigrationState.ABORTED)
            return Outcome.FATAL_DELETE_MISMATCH, str(e)

        try:
            ctx.check_continue()
            self._purge(ctx)
        except CleanupError as e:
            logger.warning(f"Obsolete row purging failed, continuing: {e}")
            ctx.transition(MigrationState.DEGRADED)
            return Outcome.DEGRADED_PURGE_FAILED, str(e)

        ctx.transition(MigrationState.DONE)
        return Outcome.SUCCESS, None

    # -------------------------------------------------------------------------
    # Stage bookkeeping
    # -------------------------------------------------------------------------

    @contextmanager
    def _stage(self, ctx: RunContext, state: MigrationState) -> Iterator[StageEvent]:
        """Enter state, time the block and report it. Yields the event to fill in."""
        ctx.transition(state)
        event = StageEvent(stage=state.value)
        started = time.monotonic()
        try:
            with log_stage(state.value, run_id=ctx.run_id):
                yield event
        except Exception as e:
            event.status = StageStatus.FAILURE
            event.error_detail = str(e)
            raise
        finally:
            event.duration_ms = int((time.monotonic() - started) * 1000)
            ctx.reporter.report(event)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _verify_target(self, ctx: RunContext) -> None:
        with self._stage(ctx, MigrationState.VERIFYING_TARGET):
            logger.info("Verifying backup database connectivity")
            ctx.archive.verify_schema()
            logger.info("Backup database verified")

    def _check_idempotency(self, ctx: RunContext) -> bool:
        with self._stage(ctx, MigrationState.CHECKING_IDEMPOTENCY) as event:
            logger.info("Checking if backup window slice already archived")
            try:
                migrated, archived = IdempotencyGuard(ctx.archive).check(ctx.windows.backup)
            except StoreError as e:
                raise TargetUnreachableError(f"archive count failed: {e}") from e
            event.row_counts["metadata"] = archived
            if migrated:
                event.status = StageStatus.SKIPPED
            return migrated

    def _select(self, ctx: RunContext) -> None:
        with self._stage(ctx, MigrationState.SELECTING) as event:
            logger.info("Selecting hashes in backup window")
            ctx.selected_keys = ctx.main.select_keys("metadata", created_in(ctx.windows.backup), order_by="hash")
            event.row_counts["metadata"] = len(ctx.selected_keys)
            logger.info(f"Selected {len(ctx.selected_keys)} hashes for backup")

    def _copy(self, ctx: RunContext) -> None:
        with self._stage(ctx, MigrationState.COPYING) as event:
            if not ctx.selected_keys:
                logger.info("No rows to archive")
                event.status = StageStatus.SKIPPED
                return

            logger.info(f"Archiving {len(ctx.selected_keys)} metadata rows and dependencies")
            for table in COPY_ORDER:
                if ctx.dry_run:
                    count = ctx.main.count_keys(table, ctx.selected_keys)
                else:
                    logger.info(f"Archiving table: {table}")
                    # Recorded before the copy so a failed table is also rolled back
                    ctx.copied_tables.append(table)
                    count = ctx.main.copy_rows(table, ctx.selected_keys, ctx.archive)
                    logger.info(f"Archived table: {table}", extra={"table": table, "rows": count})
                ctx.rows_copied[table] = count
                event.row_counts[table] = count
            logger.info("Archive operation completed")

    def _validate(self, ctx: RunContext) -> None:
        with self._stage(ctx, MigrationState.VALIDATING) as event:
            if ctx.dry_run:
                event.status = StageStatus.SKIPPED
                return

            logger.info("Validating archive integrity")
            window = created_in(ctx.windows.backup)
            for table in COPY_ORDER:
                main_count = ctx.main.count(table, window)
                archive_count = ctx.archive.count(table, window)
                logger.info(
                    f"Validation {table}: main={main_count} archive={archive_count}",
                    extra={"table": table, "main_count": main_count, "archive_count": archive_count},
                )
                if main_count != archive_count:
                    raise ValidationMismatchError(table, main_count, archive_count)
                ctx.validated_counts[table] = main_count
                event.row_counts[table] = main_count
            logger.info("Archive validation passed")

    def _delete(self, ctx: RunContext) -> None:
        with self._stage(ctx, MigrationState.DELETING) as event:
            logger.info("Cleaning up main database (backup window)")
            window = created_in(ctx.windows.backup)
            pre_delete_count = ctx.main.count("metadata", window)

            if ctx.dry_run:
                event.row_counts["metadata"] = pre_delete_count
                ctx.rows_deleted["metadata"] = pre_delete_count
                return

            validated = ctx.validated_counts.get("metadata", 0)
            if pre_delete_count != validated:
                # Concurrent writer changed the window after validation
                raise DeleteMismatchError(expected=validated, actual=pre_delete_count)

            if pre_delete_count == 0:
                logger.info("No rows to delete from main database")
                event.status = StageStatus.SKIPPED
                ctx.rows_deleted["metadata"] = 0
                return

            # Signals and fills follow through ON DELETE CASCADE
            deleted = ctx.main.delete_rows("metadata", window)
            ctx.rows_deleted["metadata"] = deleted
            event.row_counts["metadata"] = deleted
            logger.info(f"Deleted {deleted} metadata rows from main database")

            if deleted != pre_delete_count:
                raise DeleteMismatchError(expected=pre_delete_count, actual=deleted)
            logger.info("Main database cleanup completed")

    def _purge(self, ctx: RunContext) -> None:
        with self._stage(ctx, MigrationState.PURGING) as event:
            cutoff = ctx.windows.purge_cutoff
            logger.info(
                f"Purging obsolete rows (>{self.purge_days} days) from backup database",
                extra={"cutoff": cutoff},
            )
            predicate = created_at_or_before(cutoff)
            for table in PURGE_ORDER:
                try:
                    if ctx.dry_run:
                        purged = ctx.archive.count(table, predicate)
                    else:
                        purged = ctx.archive.delete_rows(table, predicate)
                except StoreError as e:
                    raise PurgeError(f"purge of {table} failed: {e}") from e
                ctx.rows_purged[table] = purged
                event.row_counts[table] = purged
                logger.info(f"Purged {purged} obsolete rows from {table}", extra={"table": table, "rows": purged})
            logger.info(f"Total obsolete rows purged: {sum(ctx.rows_purged.values())}")

    # -------------------------------------------------------------------------
    # Compensation
    # -------------------------------------------------------------------------

    def _discard_partial_copy(self, ctx: RunContext) -> str | None:
        """
        Remove rows this run copied into the archive before an abort.

        The idempotency check proved the archive held none of the selected
        keys, so deleting them by key restores the pre-run archive. Returns a
        note when the archive could not be restored.
        """
        if ctx.dry_run or not ctx.copied_tables or not ctx.selected_keys:
            return None

        logger.warning(f"Removing partially archived rows for {len(ctx.selected_keys)} hashes")
        try:
            for table in PURGE_ORDER:
                if table in ctx.copied_tables:
                    removed = ctx.archive.delete_keys(table, ctx.selected_keys)
                    logger.info(f"Removed {removed} archived rows from {table}", extra={"table": table, "rows": removed})
        except StoreError as e:
            logger.error(f"Could not remove partially archived rows: {e}")
            return f"archive still holds rows copied by run {ctx.run_id}: {e}"
        ctx.copied_tables.clear()
        return None

