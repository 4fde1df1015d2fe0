# pgcleanup/services/cleanup/errors.py
"""
Error taxonomy and run outcomes for the cleanup pipeline.

Stage failures are raised as CleanupError subclasses inside the engine and
converted to an Outcome at the engine boundary. The boundary layer (CLI,
admin API) turns an Outcome into an exit code or HTTP payload.

Exit code bands:
- 0-19: the run succeeded (possibly degraded)
- 20-29: aborted clean, both stores untouched, safe to retry
- 30+: main database partially modified, needs manual audit
"""

from enum import Enum

from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError


class Outcome(str, Enum):
    """Terminal result of one pipeline run."""

    SUCCESS = "success"
    SKIPPED_ALREADY_MIGRATED = "skipped_already_migrated"
    DEGRADED_PURGE_FAILED = "degraded_purge_failed"
    ABORTED_TARGET_UNREACHABLE = "aborted_target_unreachable"
    ABORTED_COPY_FAILED = "aborted_copy_failed"
    ABORTED_VALIDATION_FAILED = "aborted_validation_failed"
    ABORTED_INTERRUPTED = "aborted_interrupted"
    ABORTED_LOCK_HELD = "aborted_lock_held"
    FATAL_DELETE_MISMATCH = "fatal_delete_mismatch"

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self]

    @property
    def succeeded(self) -> bool:
        """True when the run finished its mandatory stages."""
        return self.exit_code < 20

    @property
    def retry_safe(self) -> bool:
        """False only when the main database needs manual verification first."""
        return self is not Outcome.FATAL_DELETE_MISMATCH


EXIT_CODES = {
    Outcome.SUCCESS: 0,
    Outcome.SKIPPED_ALREADY_MIGRATED: 10,
    Outcome.DEGRADED_PURGE_FAILED: 11,
    Outcome.ABORTED_TARGET_UNREACHABLE: 20,
    Outcome.ABORTED_COPY_FAILED: 21,
    Outcome.ABORTED_VALIDATION_FAILED: 22,
    Outcome.ABORTED_INTERRUPTED: 23,
    Outcome.ABORTED_LOCK_HELD: 24,
    Outcome.FATAL_DELETE_MISMATCH: 30,
}


class CleanupError(Exception):
    """Base class for all pipeline errors."""

    pass


class StoreError(CleanupError):
    """A store operation failed."""

    pass


class StoreConnectionError(StoreError):
    """The store could not be reached or the connection dropped."""

    pass


class QueryError(StoreError):
    """A read query failed."""

    pass


class CopyError(StoreError):
    """Copying rows into the archive failed; the archive transaction was rolled back."""

    pass


class DeleteError(StoreError):
    """A delete statement failed."""

    pass


class TargetUnreachableError(CleanupError):
    """Archive database unreachable or missing the expected schema."""

    pass


class ValidationMismatchError(CleanupError):
    """Post-copy counts differ between main and archive."""

    def __init__(self, table: str, main_count: int, archive_count: int):
        self.table = table
        self.main_count = main_count
        self.archive_count = archive_count
        super().__init__(f"row count mismatch for {table}: main={main_count} archive={archive_count}")


class DeleteMismatchError(CleanupError):
    """Rows deleted from main differ from the pre-delete count."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"deletion count mismatch: expected={expected} actual={actual}")


class PurgeError(CleanupError):
    """Purging obsolete archive rows failed."""

    pass


class LockHeldError(CleanupError):
    """Another run holds the advisory lock."""

    pass


class RunInterrupted(CleanupError):
    """The run hit its deadline or received a termination signal between stages."""

    pass


def wrap_store_error(exc: SQLAlchemyError, operation: str, error_cls: type[StoreError] = QueryError) -> StoreError:
    """Map a SQLAlchemy exception onto the taxonomy."""
    if isinstance(exc, (OperationalError, InterfaceError)) and error_cls is QueryError:
        return StoreConnectionError(f"{operation}: {exc}")
    return error_cls(f"{operation}: {exc}")
