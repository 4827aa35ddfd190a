"""ORM models for the disbursement engine."""

from disbursement_engine.models.base import Base, TimestampMixin, UTCDateTime, utcnow
from disbursement_engine.models.business import Business, Employee, Recipient
from disbursement_engine.models.schedule import (
    Job,
    Schedule,
    schedule_employee,
    schedule_recipient,
)
from disbursement_engine.models.escrow import EscrowDeposit
from disbursement_engine.models.adjustment import Adjustment
from disbursement_engine.models.audit import AuditLogEntry
from disbursement_engine.models import immutability  # noqa: F401  registers listeners

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    "Business",
    "Employee",
    "Recipient",
    "Schedule",
    "Job",
    "schedule_employee",
    "schedule_recipient",
    "EscrowDeposit",
    "Adjustment",
    "AuditLogEntry",
]
