"""Recurrence descriptors for schedules.

Descriptors are cron strings:

* recurring - standard five-field cron (``minute hour day month weekday``),
  either built by :func:`from_recurring` or hand-authored. Minute and hour
  must be single values: a descriptor fires at most once a day;
* one-time - six fields ``minute hour day month * year``. The year pins the
  descriptor to a single instant so it never fires again.

All instants are UTC. Next-occurrence computation for hand-authored and
daily/weekly descriptors is delegated to croniter; monthly descriptors built
here are month-aware (day 31 fires on the last day of shorter months).
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from croniter import croniter

from disbursement_engine.errors import ConfigurationError
from disbursement_engine.scheduling.business_days import adjust_to_business_day

DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"
FREQUENCIES = (DAILY, WEEKLY, MONTHLY)

ONE_TIME = "one_time"
RECURRING = "recurring"

_DAILY_RE = re.compile(r"^(\d{1,2}) (\d{1,2}) \* \* \*$")
_WEEKLY_RE = re.compile(r"^(\d{1,2}) (\d{1,2}) \* \* ([0-6])$")
_MONTHLY_RE = re.compile(r"^(\d{1,2}) (\d{1,2}) (\d{1,2}) \* \*$")
_ONE_TIME_RE = re.compile(r"^(\d{1,2}) (\d{1,2}) (\d{1,2}) (\d{1,2}) \* (\d{4})$")


@dataclass(frozen=True)
class PayPeriod:
    """Inclusive date range a schedule occurrence pays for."""

    start: date
    end: date

    def overlaps(self, start: date, end: date) -> bool:
        return start <= self.end and end >= self.start

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class Decomposed:
    """Editable view of a descriptor."""

    date: date
    time: time
    frequency: str | None
    schedule_type: str


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize(descriptor: str) -> str:
    return " ".join(descriptor.split())


def _last_day(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def _check_time(minute: int, hour: int) -> None:
    if not (0 <= minute <= 59 and 0 <= hour <= 23):
        raise ConfigurationError(f"Invalid time of day {hour:02d}:{minute:02d}")


# ===== Builders =====


def from_one_time(when: datetime) -> str:
    """Build a descriptor firing exactly once at ``when``."""
    when = _as_utc(when)
    return f"{when.minute} {when.hour} {when.day} {when.month} * {when.year}"


def from_recurring(when: datetime, frequency: str) -> str:
    """Build a descriptor anchored at ``when`` recurring at ``frequency``."""
    when = _as_utc(when)
    if frequency == DAILY:
        return f"{when.minute} {when.hour} * * *"
    if frequency == WEEKLY:
        # cron counts weekdays from Sunday = 0
        return f"{when.minute} {when.hour} * * {(when.weekday() + 1) % 7}"
    if frequency == MONTHLY:
        return f"{when.minute} {when.hour} {when.day} * *"
    raise ConfigurationError(
        f"Unsupported frequency '{frequency}', expected one of {', '.join(FREQUENCIES)}"
    )


# ===== Inspection =====


def _one_time_instant(descriptor: str) -> datetime | None:
    match = _ONE_TIME_RE.match(descriptor)
    if not match:
        return None
    minute, hour, day, month, year = (int(g) for g in match.groups())
    _check_time(minute, hour)
    try:
        return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)
    except ValueError as e:
        raise ConfigurationError(f"Invalid one-time descriptor '{descriptor}': {e}") from e


def schedule_type_of(descriptor: str) -> str:
    return ONE_TIME if _ONE_TIME_RE.match(_normalize(descriptor)) else RECURRING


def frequency_of(descriptor: str) -> str | None:
    """Return the builder frequency of ``descriptor``, or None if it has none."""
    descriptor = _normalize(descriptor)
    if _DAILY_RE.match(descriptor):
        return DAILY
    if _WEEKLY_RE.match(descriptor):
        return WEEKLY
    if _MONTHLY_RE.match(descriptor):
        return MONTHLY
    return None


def validate(descriptor: str) -> str:
    """Validate ``descriptor`` and return its normalized form.

    Raises ConfigurationError for anything that cannot produce occurrences.
    """
    if not descriptor or not descriptor.strip():
        raise ConfigurationError("Recurrence descriptor is empty")
    normalized = _normalize(descriptor)
    fields = normalized.split(" ")

    if len(fields) == 6:
        if _one_time_instant(normalized) is None:
            raise ConfigurationError(
                f"Invalid one-time descriptor '{descriptor}', expected 'minute hour day month * year'"
            )
        return normalized

    if len(fields) != 5 or not croniter.is_valid(normalized):
        raise ConfigurationError(f"Invalid cron expression '{descriptor}'")

    # Jobs are dated by day, so a descriptor may fire at most once a day.
    if not (fields[0].isdigit() and fields[1].isdigit()):
        raise ConfigurationError(
            f"Descriptor '{descriptor}' fires more than once a day; "
            "minute and hour must be single values"
        )
    _check_time(int(fields[0]), int(fields[1]))

    monthly = _MONTHLY_RE.match(normalized)
    if monthly:
        day = int(monthly.group(3))
        if not 1 <= day <= 31:
            raise ConfigurationError(f"Invalid day of month {day} in '{descriptor}'")
    return normalized


# ===== Occurrences =====


def _next_monthly(minute: int, hour: int, day: int, after: datetime) -> datetime:
    year, month = after.year, after.month
    while True:
        candidate = datetime(
            year, month, min(day, _last_day(year, month)), hour, minute, tzinfo=timezone.utc
        )
        if candidate > after:
            return candidate
        month += 1
        if month > 12:
            month, year = 1, year + 1


def _previous_monthly(minute: int, hour: int, day: int, at: datetime) -> datetime:
    year, month = at.year, at.month
    while True:
        candidate = datetime(
            year, month, min(day, _last_day(year, month)), hour, minute, tzinfo=timezone.utc
        )
        if candidate <= at:
            return candidate
        month -= 1
        if month < 1:
            month, year = 12, year - 1


def next_run(descriptor: str, after: datetime, *, business_days: bool = False) -> datetime | None:
    """First occurrence strictly after ``after``.

    Returns None when a one-time descriptor's single occurrence is not in the
    future. With ``business_days`` an occurrence on a weekend or public
    holiday moves to the next business day at the same time of day.
    """
    descriptor = validate(descriptor)
    after = _as_utc(after)

    instant = _one_time_instant(descriptor)
    if instant is not None:
        occurrence = instant if instant > after else None
    else:
        monthly = _MONTHLY_RE.match(descriptor)
        if monthly:
            minute, hour, day = (int(g) for g in monthly.groups())
            occurrence = _next_monthly(minute, hour, day, after)
        else:
            occurrence = _as_utc(croniter(descriptor, after).get_next(datetime))

    if business_days and occurrence is not None:
        return adjust_to_business_day(occurrence)
    return occurrence


def previous_run(descriptor: str, at: datetime) -> datetime | None:
    """Latest occurrence at or before ``at``."""
    descriptor = validate(descriptor)
    at = _as_utc(at)

    instant = _one_time_instant(descriptor)
    if instant is not None:
        return instant if instant <= at else None

    monthly = _MONTHLY_RE.match(descriptor)
    if monthly:
        minute, hour, day = (int(g) for g in monthly.groups())
        return _previous_monthly(minute, hour, day, at)

    # cron has minute resolution; search back from the end of at's minute
    base = at.replace(second=0, microsecond=0) + timedelta(minutes=1)
    return _as_utc(croniter(descriptor, base).get_prev(datetime))


def pay_period(descriptor: str, occurrence: datetime) -> PayPeriod:
    """The period an occurrence of ``descriptor`` pays for.

    ``occurrence`` may have been moved past its nominal date (business-day
    adjustment, late tick); the period is that of the latest nominal
    occurrence at or before it.

    daily -> the occurrence day; weekly -> the seven days ending on the
    occurrence day; monthly and one-time -> the calendar month of the
    occurrence; hand-authored -> the days after the previous occurrence up to
    and including this one.
    """
    descriptor = validate(descriptor)
    occurrence = _as_utc(occurrence)

    if _one_time_instant(descriptor) is not None:
        day = occurrence.date()
        return PayPeriod(day.replace(day=1), day.replace(day=_last_day(day.year, day.month)))

    nominal = previous_run(descriptor, occurrence)
    if nominal is None:
        raise ConfigurationError(f"Descriptor '{descriptor}' has no occurrence before {occurrence}")
    day = nominal.date()
    frequency = frequency_of(descriptor)

    if frequency == DAILY:
        return PayPeriod(day, day)
    if frequency == WEEKLY:
        return PayPeriod(day - timedelta(days=6), day)
    if frequency == MONTHLY:
        return PayPeriod(day.replace(day=1), day.replace(day=_last_day(day.year, day.month)))

    previous = _as_utc(croniter(descriptor, nominal).get_prev(datetime))
    return PayPeriod(previous.date() + timedelta(days=1), day)


def decompose(descriptor: str, reference: datetime | None = None) -> Decomposed | None:
    """Best-effort inverse of the builders.

    For recurring descriptors the date is the next occurrence after
    ``reference`` (default: now). Hand-authored descriptors give None.
    """
    try:
        descriptor = validate(descriptor)
    except ConfigurationError:
        return None

    instant = _one_time_instant(descriptor)
    if instant is not None:
        return Decomposed(instant.date(), instant.time(), None, ONE_TIME)

    frequency = frequency_of(descriptor)
    if frequency is None:
        return None

    reference = _as_utc(reference or datetime.now(timezone.utc))
    occurrence = next_run(descriptor, reference)
    if occurrence is None:
        return None
    return Decomposed(occurrence.date(), occurrence.time(), frequency, RECURRING)
