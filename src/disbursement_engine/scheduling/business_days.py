"""South African business days.

A business day is a weekday that is not a public holiday. Holidays are the
fixed-date public holidays plus Good Friday and Family Day, which follow
Easter Sunday.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from functools import lru_cache

FIXED_HOLIDAYS: dict[tuple[int, int], str] = {
    (1, 1): "New Year's Day",
    (3, 21): "Human Rights Day",
    (4, 27): "Freedom Day",
    (5, 1): "Workers' Day",
    (6, 16): "Youth Day",
    (8, 9): "National Women's Day",
    (9, 24): "Heritage Day",
    (12, 16): "Day of Reconciliation",
    (12, 25): "Christmas Day",
    (12, 26): "Day of Goodwill",
}


def easter_sunday(year: int) -> date:
    """Gregorian Easter Sunday (anonymous Gregorian algorithm)."""
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    q = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * q) // 451
    month, day = divmod(h + q - 7 * m + 114, 31)
    return date(year, month, day + 1)


@lru_cache(maxsize=32)
def public_holidays(year: int) -> dict[date, str]:
    holidays: dict[date, str] = {}
    for (month, day), name in FIXED_HOLIDAYS.items():
        holiday = date(year, month, day)
        holidays[holiday] = name
        # A holiday on a Sunday is observed on the Monday.
        if holiday.weekday() == 6:
            holidays.setdefault(holiday + timedelta(days=1), f"{name} (observed)")
    easter = easter_sunday(year)
    holidays[easter - timedelta(days=2)] = "Good Friday"
    holidays[easter + timedelta(days=1)] = "Family Day"
    return holidays


def holiday_name(day: date) -> str | None:
    return public_holidays(day.year).get(day)


def non_business_reason(day: date) -> str | None:
    """Why ``day`` is not a business day, or None if it is one."""
    name = holiday_name(day)
    if name is not None:
        return name
    if day.weekday() >= 5:
        return day.strftime("%A")
    return None


def is_business_day(day: date) -> bool:
    return non_business_reason(day) is None


def next_business_day(day: date) -> date:
    """First business day strictly after ``day``."""
    day += timedelta(days=1)
    while not is_business_day(day):
        day += timedelta(days=1)
    return day


def adjust_to_business_day(instant: datetime) -> datetime:
    """Move ``instant`` forward to the next business day, keeping its time of day."""
    if is_business_day(instant.date()):
        return instant
    target = next_business_day(instant.date())
    return instant.replace(year=target.year, month=target.month, day=target.day)
