# pgcleanup/services/cleanup/windows.py
"""
Time window arithmetic for one run.

All windows use an exclusive lower bound and an inclusive upper bound:
a row belongs to (start, end] iff start < created <= end.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval (start, end]. `start=None` means unbounded below."""

    start: datetime | None
    end: datetime

    def contains(self, ts: datetime) -> bool:
        if self.start is not None and ts <= self.start:
            return False
        return ts <= self.end

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat(),
        }

    def __str__(self) -> str:
        start = self.start.isoformat() if self.start else "-inf"
        return f"({start}, {self.end.isoformat()}]"


@dataclass(frozen=True)
class RunWindows:
    """Windows derived from a single `now`."""

    now: datetime
    recent: TimeWindow
    backup: TimeWindow
    obsolete: TimeWindow

    @property
    def purge_cutoff(self) -> datetime:
        return self.obsolete.end

    def to_dict(self) -> dict:
        return {
            "now": self.now.isoformat(),
            "recent": self.recent.to_dict(),
            "backup": self.backup.to_dict(),
            "obsolete": self.obsolete.to_dict(),
            "purge_cutoff": self.purge_cutoff.isoformat(),
        }


def compute_windows(now: datetime, recent_days: int, backup_days: int, purge_days: int) -> RunWindows:
    """
    Map `now` and the configured day offsets to the run's windows.

    - recent:   (now - recent_days, now]
    - backup:   (now - backup_days, now - recent_days]
    - obsolete: (-inf, now - purge_days]

    Raises:
        ValueError: non-positive offsets or recent_days >= backup_days
    """
    if min(recent_days, backup_days, purge_days) < 1:
        raise ValueError("day offsets must be positive integers")
    if recent_days >= backup_days:
        raise ValueError(f"recent_days ({recent_days}) must be smaller than backup_days ({backup_days})")

    recent_edge = now - timedelta(days=recent_days)
    return RunWindows(
        now=now,
        recent=TimeWindow(start=recent_edge, end=now),
        backup=TimeWindow(start=now - timedelta(days=backup_days), end=recent_edge),
        obsolete=TimeWindow(start=None, end=now - timedelta(days=purge_days)),
    )
