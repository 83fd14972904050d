from __future__ import annotations

from datetime import date, datetime, timedelta
from functools import lru_cache
from typing import Iterable

from dateutil.easter import easter

from ..config import get_settings


def _parse_month_day(token: str) -> tuple[int, int]:
    raw = str(token or "").strip()
    try:
        month_s, day_s = raw.split("-", 1)
        month, day = int(month_s), int(day_s)
        # Validate against a leap year so 02-29 is accepted.
        date(2000, month, day)
    except ValueError as e:
        raise ValueError(f"Invalid holiday '{token}', expected MM-DD") from e
    return month, day


@lru_cache(maxsize=64)
def movable_holidays(year: int) -> frozenset[date]:
    """Easter-relative holidays for `year`."""
    e = easter(year)
    return frozenset(
        {
            e - timedelta(days=48),  # Carnival Monday
            e - timedelta(days=47),  # Carnival Tuesday
            e - timedelta(days=2),  # Good Friday
            e,
            e + timedelta(days=60),  # Corpus Christi
        }
    )


class BusinessCalendar:
    """Weekends plus fixed MM-DD holidays, optionally plus Easter-relative ones."""

    def __init__(self, fixed_holidays: Iterable[str] = (), *, include_movable: bool = False):
        self.fixed: frozenset[tuple[int, int]] = frozenset(_parse_month_day(h) for h in fixed_holidays)
        self.include_movable = bool(include_movable)

    def is_holiday(self, d: date) -> bool:
        if (d.month, d.day) in self.fixed:
            return True
        return self.include_movable and d in movable_holidays(d.year)

    def is_business_day(self, d: date) -> bool:
        if d.weekday() >= 5:
            return False
        return not self.is_holiday(d)

    def next_business_day(self, dt: datetime) -> datetime:
        """Return `dt` itself, or the same wall-clock time on the next business day."""
        out = dt
        while not self.is_business_day(out.date()):
            out = out + timedelta(days=1)
        return out


def get_business_calendar() -> BusinessCalendar:
    cfg = get_settings().recurrence
    return BusinessCalendar(cfg.fixed_holidays, include_movable=cfg.movable_holidays)
