# pgcleanup/services/cleanup/__init__.py
"""
Cleanup services for the backtest result lifecycle.

Three-window layout, relative to the run's `now`:
- Recent: (now-RECENT_DAYS, now], stays in main
- Backup: (now-BACKUP_DAYS, now-RECENT_DAYS], moved to archive
- Obsolete: (-inf, now-PURGE_DAYS], purged from archive

Services:
- windows: Window arithmetic
- store: Database capability wrapper
- guard: Idempotency check against the archive
- engine: State machine driving one run
- reporter: Stage events to logs and metrics sinks
- lock: Single-instance advisory lock
"""

from pgcleanup.services.cleanup.engine import (
    MigrationEngine,
    MigrationResult,
    MigrationState,
    RunContext,
)
from pgcleanup.services.cleanup.errors import (
    CleanupError,
    LockHeldError,
    Outcome,
)
from pgcleanup.services.cleanup.guard import IdempotencyGuard
from pgcleanup.services.cleanup.lock import lock_path, run_lock
from pgcleanup.services.cleanup.reporter import (
    PrometheusTextfileSink,
    Reporter,
    StageEvent,
    StageStatus,
)
from pgcleanup.services.cleanup.store import StoreClient
from pgcleanup.services.cleanup.windows import RunWindows, TimeWindow, compute_windows

__all__ = [
    # Engine
    "MigrationEngine",
    "MigrationResult",
    "MigrationState",
    "RunContext",
    "Outcome",
    "CleanupError",
    # Windows
    "TimeWindow",
    "RunWindows",
    "compute_windows",
    # Stores
    "StoreClient",
    "IdempotencyGuard",
    # Reporting
    "Reporter",
    "StageEvent",
    "StageStatus",
    "PrometheusTextfileSink",
    # Locking
    "run_lock",
    "lock_path",
    "LockHeldError",
]
