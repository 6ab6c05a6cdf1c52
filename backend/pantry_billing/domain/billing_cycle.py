"""Calendar arithmetic for the monthly usage cycle."""

import calendar
from datetime import datetime


def add_one_month(moment: datetime) -> datetime:
    """Return the same wall-clock instant one calendar month later.

    Days past the end of the target month clamp to its last day
    (Jan 31 -> Feb 28/29).
    """
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def cycle_elapsed(reset_at: datetime | None, now: datetime) -> bool:
    """True when the stored reset instant is unset or already reached."""
    return reset_at is None or now >= reset_at
