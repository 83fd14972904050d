from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from ..config import get_settings


def get_app_tz() -> ZoneInfo:
    s = get_settings()
    try:
        return ZoneInfo(s.app.timezone)
    except Exception:
        return ZoneInfo("UTC")


def now_utc() -> datetime:
    # Stored timestamps are naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_aware_utc(dt_utc_naive: datetime) -> datetime:
    return dt_utc_naive.replace(tzinfo=timezone.utc)


def to_local(dt_utc_naive: datetime) -> datetime:
    tz = get_app_tz()
    return as_aware_utc(dt_utc_naive).astimezone(tz)


def to_local_naive(dt_utc_naive: datetime) -> datetime:
    """Wall-clock time in the app timezone, without tzinfo."""
    return to_local(dt_utc_naive).replace(tzinfo=None)


def from_local_to_utc_naive(dt_local_naive: datetime) -> datetime:
    tz = get_app_tz()
    aware_local = dt_local_naive.replace(tzinfo=tz)
    aware_utc = aware_local.astimezone(timezone.utc)
    return aware_utc.replace(tzinfo=None)


def normalize_datetime_to_utc_naive(dt: datetime) -> datetime:
    """Normalize a datetime to naive UTC.

    - If `dt` is timezone-aware, convert to UTC and drop tzinfo.
    - If `dt` is naive, interpret it in app timezone and convert to UTC.
    """
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return from_local_to_utc_naive(dt)


def start_of_local_day(dt_utc_naive: datetime) -> datetime:
    """Local midnight (naive, app timezone) of the day containing `dt_utc_naive`."""
    return datetime.combine(to_local_naive(dt_utc_naive).date(), time.min)


def local_day_bounds_utc(dt_utc_naive: datetime) -> tuple[datetime, datetime]:
    """Half-open [start, end) UTC bounds of the local calendar day containing `dt_utc_naive`."""
    day_start = start_of_local_day(dt_utc_naive)
    day_end = day_start + timedelta(days=1)
    return from_local_to_utc_naive(day_start), from_local_to_utc_naive(day_end)


def iso_utc(dt_utc_naive: datetime) -> str:
    return as_aware_utc(dt_utc_naive).isoformat().replace("+00:00", "Z")
