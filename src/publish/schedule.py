"""
Scheduling window rules shared by the composer and the HTTP boundary.

Facebook refuses ``scheduled_publish_time`` values too close to "now"; the
composer keeps a safety margin of 20 minutes and a 29 day horizon.
"""

from __future__ import annotations

import datetime as dt
from typing import Optional

from config.settings import Settings
from src.publish.models import BadRequest

DEFAULT_MIN_LEAD = dt.timedelta(minutes=20)
DEFAULT_MAX_HORIZON = dt.timedelta(days=29)


class ScheduleError(BadRequest):
    """Raised when a schedule instant falls outside the allowed window."""


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def ensure_aware(when: dt.datetime) -> dt.datetime:
    """Treat naive datetimes as UTC."""
    if when.tzinfo is None:
        return when.replace(tzinfo=dt.timezone.utc)
    return when


def parse_instant(value: str) -> dt.datetime:
    """Parse an ISO 8601 instant as sent by the composer (``...Z`` allowed)."""
    try:
        parsed = dt.datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ScheduleError(f"Invalid schedule time: {value!r}") from exc
    return ensure_aware(parsed)


def validate_schedule_time(
    when: dt.datetime,
    now: Optional[dt.datetime] = None,
    *,
    min_lead: dt.timedelta = DEFAULT_MIN_LEAD,
    max_horizon: Optional[dt.timedelta] = DEFAULT_MAX_HORIZON,
) -> dt.datetime:
    """
    Check that *when* is at least *min_lead* and at most *max_horizon* ahead.

    A falsy *max_horizon* disables the upper bound. Returns the aware instant.
    """
    when = ensure_aware(when)
    now = ensure_aware(now) if now is not None else utcnow()

    earliest = now + min_lead
    if when < earliest:
        minutes = int(min_lead.total_seconds() // 60)
        raise ScheduleError(f"Schedule time must be at least {minutes} minutes in the future.")
    if max_horizon and when > now + max_horizon:
        raise ScheduleError(
            f"Schedule time must be at most {max_horizon.days} days in the future."
        )
    return when


def window_from_settings(settings: Settings) -> dict:
    """Keyword arguments for :func:`validate_schedule_time` from app settings."""
    days = settings.max_schedule_horizon_days
    return {
        "min_lead": dt.timedelta(minutes=settings.min_schedule_lead_minutes),
        "max_horizon": dt.timedelta(days=days) if days else None,
    }


def to_graph_timestamp(when: dt.datetime) -> int:
    """UNIX seconds, the format Graph accepts for ``scheduled_publish_time``."""
    return int(ensure_aware(when).timestamp())
