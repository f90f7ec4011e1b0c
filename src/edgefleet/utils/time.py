"""Timezone helpers."""

from __future__ import annotations

from datetime import datetime, timezone


class Time:
    """Static helpers for datetime normalization."""

    @staticmethod
    def now() -> datetime:
        """Return timezone-aware UTC now."""
        return datetime.now(timezone.utc)

    @staticmethod
    def ensure_utc(dt: datetime) -> datetime:
        """Ensure a datetime is UTC-aware. SQLite may strip timezone info."""
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt

    @staticmethod
    def isoformat(dt: datetime | None) -> str | None:
        """Serialize an optional datetime as UTC ISO-8601."""
        if dt is None:
            return None
        return Time.ensure_utc(dt).isoformat()
