"""Timestamp helpers shared by models and services."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes even for timezone-aware columns;
    those are taken to be UTC already.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_rfc3339(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp as returned by Google APIs."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def to_epoch_ms(value: datetime | None) -> int | None:
    """Convert a datetime to epoch milliseconds."""
    value = as_utc(value)
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int | str | None) -> datetime | None:
    """Convert epoch milliseconds (int or numeric string) to aware UTC."""
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
