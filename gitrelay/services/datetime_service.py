"""Timestamps for coordination rows and webhook payloads.

Rows hold UTC text in one fixed-width layout, so SQL string comparison
orders them in time. Payloads carry ISO 8601.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pendulum

STORED_FORMAT = "%Y-%m-%d %H:%M:%S.%f%z"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def format_datetime(dt: datetime) -> str:
    """Render ``dt`` in the stored layout; naive values count as UTC."""
    return pendulum.instance(dt).in_timezone("UTC").strftime(STORED_FORMAT)


def utc_after(seconds: float) -> str:
    return format_datetime(now_utc() + timedelta(seconds=seconds))


def parse_timestamp(value: str) -> datetime:
    """Read a stored or ISO 8601 timestamp back as an aware UTC datetime."""
    parsed = pendulum.parse(value.strip(), tz="UTC", strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        msg = f"Not a timestamp: {value!r}"
        raise ValueError(msg)
    return parsed.in_timezone("UTC")


def format_iso(dt: datetime) -> str:
    return pendulum.instance(dt).in_timezone("UTC").isoformat()
