# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""DateTime helpers.

All timestamps are stored in UTC and all Python datetimes handled by the
control plane are timezone-aware. Step records inside JSON columns store
ISO 8601 strings produced by format_iso().

Usage:
    from mealplane.utils.datetime import utc_now

    created_at = mapped_column(DateTime(timezone=True), default=utc_now)
"""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware UTC.

    Naive values are assumed to be UTC already (SQLite drops tzinfo on
    round-trip); aware values are converted.

    Args:
        dt: A datetime object (naive or aware) or None.

    Returns:
        Timezone-aware UTC datetime or None.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def hours_from_now(hours: int) -> datetime:
    """Get a datetime N hours in the future."""
    return utc_now() + timedelta(hours=hours)


def elapsed_ms(start: datetime) -> int:
    """Milliseconds elapsed since ``start``."""
    return int((utc_now() - ensure_utc(start)).total_seconds() * 1000)


def format_iso(dt: datetime | None) -> str | None:
    """Format a datetime as an ISO 8601 UTC string."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def parse_iso(iso_string: str | None) -> datetime | None:
    """Parse an ISO 8601 string into an aware UTC datetime."""
    if iso_string is None:
        return None
    return ensure_utc(datetime.fromisoformat(iso_string.replace("Z", "+00:00")))
