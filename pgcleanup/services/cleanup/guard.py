# pgcleanup/services/cleanup/guard.py
"""
Idempotency guard for the backup window.

A run may be re-invoked against a window that is already archived (manual
retry, clock skew, overlapping cron). Any metadata row already present in
the archive inside the window means the window was migrated and the run
must not write anything.
"""

import logging

from pgcleanup.services.cleanup.store import StoreClient, created_in
from pgcleanup.services.cleanup.windows import TimeWindow

logger = logging.getLogger(__name__)


def already_migrated(archived_count: int) -> bool:
    """True iff the archive already holds rows for the window."""
    return archived_count > 0


class IdempotencyGuard:
    """Checks the archive for rows inside a window before any copy happens."""

    def __init__(self, archive: StoreClient, table: str = "metadata"):
        self.archive = archive
        self.table = table

    def check(self, window: TimeWindow) -> tuple[bool, int]:
        """
        Count archive rows inside window.

        Returns:
            (already_migrated, archived_count)
        """
        archived_count = self.archive.count(self.table, created_in(window))
        migrated = already_migrated(archived_count)
        if migrated:
            logger.info(f"Slice already archived ({archived_count} rows), skipping")
        else:
            logger.info("Slice not archived, proceeding")
        return migrated, archived_count

    def already_migrated(self, window: TimeWindow) -> bool:
        return self.check(window)[0]
