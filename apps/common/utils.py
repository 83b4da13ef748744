"""Utility helpers shared across apps."""

from __future__ import annotations

from datetime import datetime, timezone as dt_timezone


def from_epoch_ms(value: int | float | None) -> datetime | None:
    """Convert an epoch-milliseconds timestamp into an aware UTC datetime."""
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value) / 1000, tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
