# pgcleanup/routers/admin_cleanup.py
"""
Admin endpoints for the backtest cleanup pipeline.

GET  /v1/admin/cleanup/status  - Windows and per-window row counts
GET  /v1/admin/cleanup/windows - Windows a run would use now
POST /v1/admin/cleanup/run     - Trigger a run (dry run or confirmed)
"""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from pgcleanup.auth import require_admin_key
from pgcleanup.config import Settings, get_settings
from pgcleanup.database import get_engines
from pgcleanup.services.cleanup import (
    CleanupError,
    LockHeldError,
    MigrationEngine,
    compute_windows,
    run_lock,
)
from pgcleanup.services.cleanup.store import created_in
from pgcleanup.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin/cleanup", tags=["admin-cleanup"])


def get_cleanup_engine(settings: Settings = Depends(get_settings)) -> MigrationEngine:
    """Engine wired to the process-wide database engines."""
    main_engine, archive_engine = get_engines()
    return MigrationEngine.from_settings(settings, main_engine=main_engine, archive_engine=archive_engine)


# -----------------------------------------------------------------------------
# Response Models
# -----------------------------------------------------------------------------


class WindowModel(BaseModel):
    start: datetime | None
    end: datetime


class WindowsResponse(BaseModel):
    """Windows derived from one reference time."""

    now: datetime
    recent: WindowModel
    backup: WindowModel
    obsolete: WindowModel
    purge_cutoff: datetime


class StoreCounts(BaseModel):
    """Row counts per window and table for one database."""

    available: bool
    counts: dict[str, dict[str, int]] = Field(default_factory=dict)
    error: str | None = None


class CleanupStatusResponse(BaseModel):
    """Current configuration, windows and row counts."""

    config: dict[str, Any]
    windows: WindowsResponse
    main: StoreCounts
    archive: StoreCounts


class StageEventModel(BaseModel):
    stage: str
    status: str
    row_counts: dict[str, int]
    duration_ms: int
    error_detail: str | None = None


class RunResponse(BaseModel):
    """Cleanup run result."""

    run_id: str
    outcome: str
    exit_code: int
    success: bool
    retry_safe: bool
    dry_run: bool
    duration_seconds: float
    windows: WindowsResponse
    rows_copied: dict[str, int]
    rows_deleted: dict[str, int]
    rows_purged: dict[str, int]
    events: list[StageEventModel]
    error: str | None = None


class RunRequest(BaseModel):
    """Request to trigger a run."""

    dry_run: bool = Field(False, description="Count only, don't copy or delete")
    confirm: bool = Field(False, description="Required confirmation for non-dry-run")


def _windows_response(windows) -> WindowsResponse:
    return WindowsResponse(
        now=windows.now,
        recent=WindowModel(start=windows.recent.start, end=windows.recent.end),
        backup=WindowModel(start=windows.backup.start, end=windows.backup.end),
        obsolete=WindowModel(start=windows.obsolete.start, end=windows.obsolete.end),
        purge_cutoff=windows.purge_cutoff,
    )


# -----------------------------------------------------------------------------
# Endpoints
# -----------------------------------------------------------------------------


@router.get("/windows", response_model=WindowsResponse)
def get_windows(
    now: datetime | None = Query(None, description="Reference time (naive UTC)"),
    settings: Settings = Depends(get_settings),
    _: None = Depends(require_admin_key),
) -> WindowsResponse:
    """
    Get the recent, backup and obsolete windows for a run at `now`.
    """
    windows = compute_windows(now or utcnow(), settings.RECENT_DAYS, settings.BACKUP_DAYS, settings.PURGE_DAYS)
    return _windows_response(windows)


@router.get("/status", response_model=CleanupStatusResponse)
def get_cleanup_status(
    settings: Settings = Depends(get_settings),
    engine: MigrationEngine = Depends(get_cleanup_engine),
    _: None = Depends(require_admin_key),
) -> CleanupStatusResponse:
    """
    Get row counts per window in both databases.

    An unreachable database is reported as unavailable instead of failing
    the whole request.
    """
    windows = compute_windows(utcnow(), settings.RECENT_DAYS, settings.BACKUP_DAYS, settings.PURGE_DAYS)

    stores = {}
    for store in (engine.main, engine.archive):
        try:
            counts = {
                label: store.counts(created_in(window))
                for label, window in (
                    ("recent", windows.recent),
                    ("backup", windows.backup),
                    ("obsolete", windows.obsolete),
                )
            }
            stores[store.name] = StoreCounts(available=True, counts=counts)
        except CleanupError as e:
            logger.warning(f"Status counts unavailable for {store.name}: {e}")
            stores[store.name] = StoreCounts(available=False, error=str(e))

    return CleanupStatusResponse(
        config={
            "schema": settings.SCHEMA,
            "recent_days": settings.RECENT_DAYS,
            "backup_days": settings.BACKUP_DAYS,
            "purge_days": settings.PURGE_DAYS,
            "max_runtime_minutes": settings.MAX_RUNTIME_MINUTES,
            "batch_size": settings.BATCH_SIZE,
        },
        windows=_windows_response(windows),
        main=stores["main"],
        archive=stores["archive"],
    )


@router.post("/run", response_model=RunResponse)
def trigger_run(
    request: RunRequest,
    settings: Settings = Depends(get_settings),
    engine: MigrationEngine = Depends(get_cleanup_engine),
    _: None = Depends(require_admin_key),
) -> RunResponse:
    """
    Trigger one cleanup run under the run lock.

    **WARNING**: a confirmed run deletes the backup window from the main
    database and purges obsolete archive rows.

    Requires `confirm: true` for non-dry-run operations. Returns 409 when
    another run holds the lock. Pipeline failures are reported in the body
    (`outcome`, `exit_code`, `retry_safe`), not as HTTP errors.
    """
    if not request.dry_run and not request.confirm:
        raise HTTPException(
            status_code=400,
            detail="Run requires 'confirm: true' for non-dry-run operations",
        )

    try:
        with run_lock(settings.LOCK_NAME, settings.LOCK_DIR):
            result = engine.run(dry_run=request.dry_run)
    except LockHeldError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return RunResponse(
        run_id=result.run_id,
        outcome=result.outcome.value,
        exit_code=result.exit_code,
        success=result.success,
        retry_safe=result.outcome.retry_safe,
        dry_run=result.dry_run,
        duration_seconds=round(result.duration_seconds, 3),
        windows=_windows_response(result.windows),
        rows_copied=result.rows_copied,
        rows_deleted=result.rows_deleted,
        rows_purged=result.rows_purged,
        events=[StageEventModel(**event.to_dict()) for event in result.events],
        error=result.error,
    )
