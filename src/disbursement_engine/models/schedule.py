"""Schedule and job models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from disbursement_engine.models.base import Base, TimestampMixin, UpdatedAtMixin
from disbursement_engine.models.business import Employee, Recipient

# ===== Payee associations =====

schedule_recipient = Table(
    "schedule_recipient",
    Base.metadata,
    Column(
        "schedule_id",
        ForeignKey("schedule.schedule_id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "recipient_id",
        ForeignKey("recipient.recipient_id", ondelete="CASCADE"),
        primary_key=True,
    ),
)

schedule_employee = Table(
    "schedule_employee",
    Base.metadata,
    Column(
        "schedule_id",
        ForeignKey("schedule.schedule_id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "employee_id",
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


# ===== Schedules =====


class Schedule(Base, TimestampMixin, UpdatedAtMixin):
    """Recurrence definition producing dated jobs.

    ``kind`` distinguishes generic payments (fixed ``amount`` per recipient)
    from payroll (amount computed per employee, ``amount`` is null).
    """

    __tablename__ = "schedule"

    schedule_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    business_id: Mapped[UUID] = mapped_column(
        ForeignKey("business.business_id", ondelete="CASCADE"),
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZAR")
    cron_expression: Mapped[str] = mapped_column(String, nullable=False)
    schedule_type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    next_run_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint("kind IN ('generic', 'payroll')", name="schedule_kind_check"),
        CheckConstraint(
            "schedule_type IN ('one_time', 'recurring')",
            name="schedule_type_check",
        ),
        CheckConstraint(
            "status IN ('active', 'paused', 'cancelled')",
            name="schedule_status_check",
        ),
        CheckConstraint(
            "(kind = 'generic' AND amount IS NOT NULL AND amount > 0) "
            "OR (kind = 'payroll' AND amount IS NULL)",
            name="schedule_amount_check",
        ),
        Index("ix_schedule_due", "status", "next_run_at"),
        Index("ix_schedule_business", "business_id"),
    )

    # Relationships
    recipients: Mapped[list[Recipient]] = relationship(secondary=schedule_recipient)
    employees: Mapped[list[Employee]] = relationship(secondary=schedule_employee)

    @property
    def business_days_only(self) -> bool:
        """Payroll occurrences are moved off weekends and public holidays."""
        return self.kind == "payroll"


# ===== Jobs =====


class Job(Base, TimestampMixin, UpdatedAtMixin):
    """One dated, amount-bearing execution unit derived from a schedule occurrence.

    ``payee_key`` is ``employee:<id>`` or ``recipient:<id>``; it is part of the
    slot uniqueness constraint so that two jobs can never pay the same payee
    for the same schedule period.
    """

    __tablename__ = "job"

    job_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    schedule_id: Mapped[UUID] = mapped_column(
        ForeignKey("schedule.schedule_id", ondelete="CASCADE"),
        nullable=False,
    )
    business_id: Mapped[UUID] = mapped_column(
        ForeignKey("business.business_id", ondelete="CASCADE"),
        nullable=False,
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZAR")
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    employee_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="SET NULL"),
        nullable=True,
    )
    recipient_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("recipient.recipient_id", ondelete="SET NULL"),
        nullable=True,
    )
    payee_key: Mapped[str] = mapped_column(String, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    rail_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    breakdown: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    reserved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "schedule_id",
            "period_start",
            "period_end",
            "payee_key",
            name="job_schedule_period_payee_unique",
        ),
        CheckConstraint(
            "status IN ('pending', 'processing', 'succeeded', 'failed')",
            name="job_status_check",
        ),
        CheckConstraint("period_start <= period_end", name="job_period_check"),
        Index("ix_job_business_status", "business_id", "status"),
    )

    @staticmethod
    def payee_key_for(employee_id: UUID | None, recipient_id: UUID | None) -> str:
        if employee_id is not None:
            return f"employee:{employee_id}"
        if recipient_id is not None:
            return f"recipient:{recipient_id}"
        raise ValueError("A job needs an employee or a recipient")
