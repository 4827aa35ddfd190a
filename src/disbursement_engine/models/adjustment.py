"""Adjustment model: benefits, deductions and once-off payments."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, Date, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from disbursement_engine.models.base import Base, TimestampMixin, UpdatedAtMixin


class Adjustment(Base, TimestampMixin, UpdatedAtMixin):
    """A recurring or once-off addition/deduction.

    Scope: ``employee_id`` null means company-wide.
    Timing: both period fields null means recurring, both set means once-off.
    """

    __tablename__ = "adjustment"

    adjustment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    business_id: Mapped[UUID] = mapped_column(
        ForeignKey("business.business_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=True,
    )
    schedule_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("schedule.schedule_id", ondelete="CASCADE"),
        nullable=True,
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    value_type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    direction: Mapped[str] = mapped_column(String, nullable=False)
    period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "value_type IN ('fixed', 'percentage')",
            name="adjustment_value_type_check",
        ),
        CheckConstraint(
            "direction IN ('addition', 'deduction')",
            name="adjustment_direction_check",
        ),
        CheckConstraint("amount >= 0", name="adjustment_amount_check"),
        CheckConstraint(
            "value_type <> 'percentage' OR amount <= 100",
            name="adjustment_percentage_check",
        ),
        CheckConstraint(
            "(period_start IS NULL AND period_end IS NULL) "
            "OR (period_start IS NOT NULL AND period_end IS NOT NULL "
            "AND period_start <= period_end)",
            name="adjustment_period_check",
        ),
        Index("ix_adjustment_business_active", "business_id", "is_active"),
    )

    @property
    def is_recurring(self) -> bool:
        return self.period_start is None and self.period_end is None

    @property
    def is_company_wide(self) -> bool:
        return self.employee_id is None
