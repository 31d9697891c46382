"""Time helpers. All stored timestamps are naive UTC (SQLite keeps no tzinfo)."""
from datetime import datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_epoch(seconds: Union[int, float, str]) -> datetime:
    """Convert a unix timestamp (as GitHub sends in x-ratelimit-reset) to naive UTC."""
    return datetime.fromtimestamp(float(seconds), tz=timezone.utc).replace(tzinfo=None)


def parse_github_timestamp(value: Union[str, int, float, None]) -> Optional[datetime]:
    """Parse a GitHub timestamp into naive UTC.

    Accepts ISO-8601 strings like '2025-01-15T07:30:00Z' and the unix epoch
    integers that push-event repository objects use. Returns None for empty
    values. Raises ValueError on malformed input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return from_epoch(value)
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
