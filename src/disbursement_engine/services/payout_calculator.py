"""Per-payee amounts for one schedule occurrence.

Generic payments: the schedule amount per recipient, adjusted by the
adjustments tied to the schedule.

Payroll: the employee's salary for the period goes through the tax
calculator, and the resolved adjustments are applied to the net salary.
Percentage adjustments use the period gross as their base.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from disbursement_engine.calculators import PERIODS_PER_YEAR, TaxCalculator
from disbursement_engine.models import Employee, Job, Recipient, Schedule
from disbursement_engine.scheduling import MONTHLY, PayPeriod, frequency_of
from disbursement_engine.services.adjustment_resolver import AdjustmentResolver

CENTS = Decimal("0.01")
MONTHS_PER_YEAR = Decimal("12")

# Bumped when the amount formula changes, so stored breakdowns stay traceable.
CALCULATION_VERSION = 1


def compute_hash(data: dict[str, Any]) -> str:
    """Compute a deterministic hash of data."""
    json_str = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(json_str.encode()).hexdigest()[:32]


@dataclass(frozen=True)
class PayeeAmount:
    """Amount owed to one payee for one period, with its derivation."""

    amount: Decimal
    breakdown: dict[str, Any]
    employee_id: UUID | None = None
    recipient_id: UUID | None = None

    @property
    def payee_key(self) -> str:
        return Job.payee_key_for(self.employee_id, self.recipient_id)


class PayoutCalculator:
    """Computes job amounts for a schedule occurrence."""

    def __init__(
        self,
        session: Session,
        tax_calculator: TaxCalculator | None = None,
        sdl_payroll_threshold: Decimal = Decimal("500000"),
    ) -> None:
        self.session = session
        self.tax_calculator = tax_calculator or TaxCalculator()
        self.resolver = AdjustmentResolver(session)
        self.sdl_payroll_threshold = sdl_payroll_threshold

    def annual_payroll(self, business_id: UUID) -> Decimal:
        monthly = self.session.scalar(
            select(func.coalesce(func.sum(Employee.gross_salary), 0)).where(
                Employee.business_id == business_id,
                Employee.is_active.is_(True),
            )
        )
        return Decimal(str(monthly)).quantize(CENTS) * MONTHS_PER_YEAR

    def sdl_applicable(self, business_id: UUID) -> bool:
        """Businesses above the annual payroll threshold pay SDL."""
        return self.annual_payroll(business_id) > self.sdl_payroll_threshold

    def for_schedule(self, schedule: Schedule, period: PayPeriod) -> list[PayeeAmount]:
        if schedule.kind == "payroll":
            sdl = self.sdl_applicable(schedule.business_id)
            return [
                self.payroll_amount(schedule, employee, period, sdl_applicable=sdl)
                for employee in sorted(schedule.employees, key=lambda e: str(e.employee_id))
                if employee.is_active
            ]
        return [
            self.generic_amount(schedule, recipient, period)
            for recipient in sorted(schedule.recipients, key=lambda r: str(r.recipient_id))
        ]

    def estimate_occurrence(self, schedule: Schedule) -> Decimal:
        """Upper bound on what one occurrence of ``schedule`` will draw from escrow.

        Payroll counts gross salary, generic schedules the base amount per
        recipient. Adjustments are left out.
        """
        if schedule.kind == "payroll":
            frequency = frequency_of(schedule.cron_expression) or MONTHLY
            return sum(
                (
                    self.period_gross(employee, frequency)
                    for employee in schedule.employees
                    if employee.is_active
                ),
                Decimal("0.00"),
            )
        amount = Decimal(str(schedule.amount or 0))
        return (amount * len(schedule.recipients)).quantize(CENTS, rounding=ROUND_HALF_UP)

    def period_gross(self, employee: Employee, frequency: str) -> Decimal:
        """Monthly salary scaled to the schedule's pay frequency."""
        monthly = Decimal(str(employee.gross_salary))
        periods = PERIODS_PER_YEAR[frequency]
        return (monthly * MONTHS_PER_YEAR / periods).quantize(CENTS, rounding=ROUND_HALF_UP)

    def payroll_amount(
        self,
        schedule: Schedule,
        employee: Employee,
        period: PayPeriod,
        *,
        sdl_applicable: bool,
    ) -> PayeeAmount:
        frequency = frequency_of(schedule.cron_expression) or MONTHLY
        gross = self.period_gross(employee, frequency)
        tax = self.tax_calculator.calculate(
            gross,
            uif_exempt=employee.uif_exempt,
            sdl_applicable=sdl_applicable,
            frequency=frequency,
        )
        adjustments = self.resolver.resolve(
            schedule.business_id,
            employee.employee_id,
            period,
            reference_base=gross,
            schedule_id=schedule.schedule_id,
        )
        amount = adjustments.apply(tax.net_salary)

        breakdown: dict[str, Any] = {
            "calculation_version": CALCULATION_VERSION,
            "kind": "payroll",
            "period": period.to_dict(),
            "tax": tax.to_dict(),
            "adjustments": adjustments.to_dict(),
            "final_amount": str(amount),
        }
        breakdown["calculation_hash"] = compute_hash(breakdown)
        return PayeeAmount(amount=amount, breakdown=breakdown, employee_id=employee.employee_id)

    def generic_amount(
        self,
        schedule: Schedule,
        recipient: Recipient,
        period: PayPeriod,
    ) -> PayeeAmount:
        base = Decimal(str(schedule.amount))
        adjustments = self.resolver.resolve(
            schedule.business_id,
            None,
            period,
            reference_base=base,
            schedule_id=schedule.schedule_id,
            schedule_only=True,
        )
        amount = adjustments.apply(base)

        breakdown: dict[str, Any] = {
            "calculation_version": CALCULATION_VERSION,
            "kind": "generic",
            "period": period.to_dict(),
            "base_amount": str(base),
            "adjustments": adjustments.to_dict(),
            "final_amount": str(amount),
        }
        breakdown["calculation_hash"] = compute_hash(breakdown)
        return PayeeAmount(amount=amount, breakdown=breakdown, recipient_id=recipient.recipient_id)
