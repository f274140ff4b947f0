"""Time utilities shared across timercalc components."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utc_now_str() -> str:
    """Return the current UTC timestamp as an ISO-8601 string."""
    return utc_now().isoformat()


def to_epoch(ts: datetime) -> float:
    """Convert a datetime to UTC epoch seconds; naive values are taken as UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


def from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(float(seconds), tz=timezone.utc)


def ms_until_offset(now: datetime, offset_seconds: int) -> int:
    """Milliseconds from ``now`` until the next wall-clock second-of-minute ``offset_seconds``.

    Uses ``(60 + (offset - second)) % 60`` seconds minus the current millisecond.
    When ``now`` is already inside the offset second the result would be negative,
    so it rolls over to the same second of the following minute.
    """
    seconds_until = (60 + (int(offset_seconds) - now.second)) % 60
    delay_ms = seconds_until * 1000 - now.microsecond // 1000
    if delay_ms < 0:
        delay_ms += 60_000
    return delay_ms
