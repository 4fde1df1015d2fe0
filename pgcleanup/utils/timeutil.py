"""Timestamp helpers shared by the engine, CLI and admin API."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Naive UTC now, matching the naive `created` columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into naive UTC.

    Aware values are converted to UTC first; naive values are taken as UTC.
    """
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is not None:
        ts = ts.astimezone(UTC).replace(tzinfo=None)
    return ts


def format_duration(seconds: float) -> str:
    """Render a duration as 42s, 3m5s or 1h2m3s."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m{seconds % 60}s"
    return f"{seconds // 3600}h{(seconds % 3600) // 60}m{seconds % 60}s"
