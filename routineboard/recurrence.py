"""Calendar arithmetic for recurring tasks.

Everything here is pure: callers pass wall-clock datetimes (already converted
to the app timezone) and get new values back. Conversion to and from stored
UTC happens in the engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional

from dateutil.relativedelta import FR, MO, SA, SU, TH, TU, WE, relativedelta

from .models import MonthlyAnchor, RecurrenceFrequency
from .utils.business_days import BusinessCalendar


_WEEKDAYS = (MO, TU, WE, TH, FR, SA, SU)

_OFFSETS = {
    RecurrenceFrequency.daily: relativedelta(days=1),
    RecurrenceFrequency.weekly: relativedelta(weeks=1),
    RecurrenceFrequency.biweekly: relativedelta(weeks=2),
    # relativedelta clamps to the last day of shorter months (Jan 31 -> Feb 28).
    RecurrenceFrequency.monthly: relativedelta(months=1),
}


class RecurrenceError(ValueError):
    pass


@dataclass(frozen=True)
class Occurrence:
    start: datetime
    due: datetime

    @property
    def duration(self) -> timedelta:
        return self.due - self.start


def coerce_frequency(frequency: RecurrenceFrequency | str) -> RecurrenceFrequency:
    try:
        return RecurrenceFrequency(frequency)
    except ValueError as e:
        raise RecurrenceError(f"Unsupported recurrence frequency: {frequency}") from e


def frequency_offset(frequency: RecurrenceFrequency | str) -> relativedelta:
    return _OFFSETS[coerce_frequency(frequency)]


def nth_weekday_of_month(dt: datetime) -> tuple[int, int]:
    """Return (n, weekday) such that `dt` is the n-th `weekday` of its month."""
    return (dt.day - 1) // 7 + 1, dt.weekday()


def nth_weekday_in_month_of(dt: datetime, nth: int, weekday: int) -> datetime:
    """The n-th `weekday` of `dt`'s month, or the last one if the month has fewer."""
    wd = _WEEKDAYS[weekday]
    candidate = dt + relativedelta(day=1, weekday=wd(+nth))
    if candidate.month != dt.month:
        candidate = dt + relativedelta(day=31, weekday=wd(-1))
    return candidate


def _apply_anchor(
    start: datetime,
    frequency: RecurrenceFrequency,
    anchor_start: datetime,
    monthly_anchor: MonthlyAnchor,
) -> datetime:
    if frequency == RecurrenceFrequency.monthly:
        if monthly_anchor == MonthlyAnchor.weekday:
            nth, weekday = nth_weekday_of_month(anchor_start)
            target = nth_weekday_in_month_of(start, nth, weekday)
            return datetime.combine(target.date(), anchor_start.time())
        # Same day of month as the anchor, clamped to the month length.
        return start + relativedelta(day=anchor_start.day)

    if frequency in (RecurrenceFrequency.weekly, RecurrenceFrequency.biweekly):
        # Smallest signed shift back onto the anchor's weekday.
        diff = (anchor_start.weekday() - start.weekday() + 3) % 7 - 3
        if diff:
            return start + timedelta(days=diff)

    return start


def next_occurrence(
    prev_start: datetime,
    prev_due: datetime,
    frequency: RecurrenceFrequency | str,
    *,
    anchor_start: Optional[datetime] = None,
    monthly_anchor: MonthlyAnchor | str = MonthlyAnchor.date,
    calendar: Optional[BusinessCalendar] = None,
) -> Occurrence:
    """Compute the occurrence following (prev_start, prev_due).

    The offset applies to the start only and the due date keeps the previous
    duration. `anchor_start` (the lineage root's start) corrects drift for
    weekly and monthly frequencies. With a `calendar`, dates landing on a
    weekend or holiday move to the next business day.
    """
    freq = coerce_frequency(frequency)
    duration = prev_due - prev_start

    start = prev_start + _OFFSETS[freq]
    if anchor_start is not None:
        start = _apply_anchor(start, freq, anchor_start, MonthlyAnchor(monthly_anchor))

    if calendar is not None:
        start = calendar.next_business_day(start)

    due = start + duration
    if calendar is not None:
        due = calendar.next_business_day(due)

    return Occurrence(start=start, due=due)


def completion_anchor(now_local: datetime, prev_start: datetime, prev_due: datetime) -> Occurrence:
    """Anchor used by on-completion recurrence: (today, today + duration)."""
    today = datetime.combine(now_local.date(), time.min)
    return Occurrence(start=today, due=today + (prev_due - prev_start))


def creation_threshold(next_start_local: datetime, *, lead_days: int = 1) -> datetime:
    """Earliest local time at which the schedule pass creates an occurrence.

    With the default lead of one day the occurrence appears at the start of
    the day before it begins.
    """
    day_start = datetime.combine(next_start_local.date(), time.min)
    return day_start - timedelta(days=max(0, int(lead_days)))
