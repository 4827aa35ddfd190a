"""Recurrence descriptors, pay periods and business days."""

from disbursement_engine.scheduling.business_days import (
    adjust_to_business_day,
    is_business_day,
    non_business_reason,
)
from disbursement_engine.scheduling.cron import (
    DAILY,
    FREQUENCIES,
    MONTHLY,
    ONE_TIME,
    RECURRING,
    WEEKLY,
    Decomposed,
    PayPeriod,
    decompose,
    frequency_of,
    from_one_time,
    from_recurring,
    next_run,
    pay_period,
    previous_run,
    schedule_type_of,
    validate,
)

__all__ = [
    "DAILY",
    "FREQUENCIES",
    "MONTHLY",
    "ONE_TIME",
    "RECURRING",
    "WEEKLY",
    "Decomposed",
    "PayPeriod",
    "adjust_to_business_day",
    "decompose",
    "frequency_of",
    "from_one_time",
    "from_recurring",
    "is_business_day",
    "next_run",
    "non_business_reason",
    "pay_period",
    "previous_run",
    "schedule_type_of",
    "validate",
]
