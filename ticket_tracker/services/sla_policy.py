"""
Ticket Tracker
SLA policy: priority-derived resolution allowances.

    due date = created_at + allowance(priority)
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

# ─── Resolution allowance per priority (hours) ───────────────────────────────
SLA_ALLOWANCE_HOURS: dict[str, int] = {
    "Critical": 4,
    "High": 24,
    "Medium": 72,
    "Low": 168,
}
_DEFAULT_ALLOWANCE_HOURS = 72


def as_utc(dt: datetime) -> datetime:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    All comparisons against datetime.now(timezone.utc) must go through this helper
    so the same code works in both environments.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def allowance_for(priority: str | None) -> timedelta:
    return timedelta(hours=SLA_ALLOWANCE_HOURS.get(priority or "", _DEFAULT_ALLOWANCE_HOURS))


def due_date_for(created_at: datetime | None, priority: str | None) -> datetime | None:
    if created_at is None:
        return None
    return as_utc(created_at) + allowance_for(priority)
