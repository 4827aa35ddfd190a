"""Business (tenant), employee, and recipient models."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, CheckConstraint, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from disbursement_engine.models.base import Base, TimestampMixin

# Weeks per month used to turn a weekly roster into monthly hours.
WEEKS_PER_MONTH = Decimal("52") / Decimal("12")

# Employees working fewer hours than this per month do not contribute to UIF.
UIF_MINIMUM_MONTHLY_HOURS = Decimal("24")


class Business(Base, TimestampMixin):
    """Tenant owning every other row by ``business_id``."""

    __tablename__ = "business"

    business_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'suspended', 'banned')",
            name="business_status_check",
        ),
    )

    @property
    def can_perform_actions(self) -> bool:
        """Only active businesses may create or change schedules and adjustments."""
        return self.status == "active"


class Employee(Base, TimestampMixin):
    """Payroll payee.

    ``weekly_hours`` holds seven entries, Monday first.
    """

    __tablename__ = "employee"

    employee_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    business_id: Mapped[UUID] = mapped_column(
        ForeignKey("business.business_id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    gross_salary: Mapped[Decimal] = mapped_column(nullable=False)
    employment_type: Mapped[str] = mapped_column(String, nullable=False, default="full_time")
    weekly_hours: Mapped[list] = mapped_column(JSON, nullable=False, default=lambda: [8, 8, 8, 8, 8, 0, 0])
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("gross_salary >= 0", name="employee_gross_salary_check"),
        CheckConstraint(
            "employment_type IN ('full_time', 'part_time', 'contract', 'casual')",
            name="employee_employment_type_check",
        ),
        Index("ix_employee_business", "business_id"),
    )

    @property
    def monthly_hours(self) -> Decimal:
        weekly = sum((Decimal(str(h)) for h in (self.weekly_hours or [])), Decimal("0"))
        return weekly * WEEKS_PER_MONTH

    @property
    def uif_exempt(self) -> bool:
        return self.monthly_hours < UIF_MINIMUM_MONTHLY_HOURS


class Recipient(Base, TimestampMixin):
    """Payee of a generic payment schedule."""

    __tablename__ = "recipient"

    recipient_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    business_id: Mapped[UUID] = mapped_column(
        ForeignKey("business.business_id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    bank_reference: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (Index("ix_recipient_business", "business_id"),)
