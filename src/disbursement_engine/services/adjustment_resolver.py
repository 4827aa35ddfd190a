"""Resolution of the adjustments applying to one payee and pay period.

Candidate set for ``resolve(business, employee, period)``:

* recurring company-wide adjustments (no employee, no period)
* recurring adjustments of the employee
* once-off adjustments, company-wide or the employee's, whose period overlaps
  the target period (inclusive bounds)

A once-off sharing scope and name with a recurring adjustment replaces it
for the periods it overlaps; outside them the recurring value applies again.
When several once-offs share a scope and name, the most recently created one
is used.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from disbursement_engine.models import Adjustment
from disbursement_engine.scheduling import PayPeriod

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")


def resolve_amount(adjustment: Adjustment, reference_base: Decimal) -> Decimal:
    """Monetary value of one adjustment against ``reference_base``."""
    amount = Decimal(str(adjustment.amount))
    if adjustment.value_type == "percentage":
        amount = amount / HUNDRED * Decimal(str(reference_base))
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ResolvedAdjustment:
    """One applied adjustment with its resolved amount."""

    adjustment_id: UUID
    name: str
    direction: str
    value_type: str
    rate: Decimal
    amount: Decimal
    employee_id: UUID | None
    once_off: bool
    overrides: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "adjustment_id": str(self.adjustment_id),
            "name": self.name,
            "direction": self.direction,
            "value_type": self.value_type,
            "rate": str(self.rate),
            "amount": str(self.amount),
            "employee_id": str(self.employee_id) if self.employee_id else None,
            "once_off": self.once_off,
            "overrides": str(self.overrides) if self.overrides else None,
        }


@dataclass(frozen=True)
class ResolvedAdjustments:
    """Additions and deductions for one payee and period."""

    additions: tuple[ResolvedAdjustment, ...]
    deductions: tuple[ResolvedAdjustment, ...]

    @property
    def total_additions(self) -> Decimal:
        return sum((a.amount for a in self.additions), Decimal("0.00"))

    @property
    def total_deductions(self) -> Decimal:
        return sum((d.amount for d in self.deductions), Decimal("0.00"))

    @property
    def net(self) -> Decimal:
        """Net adjustment: additions minus deductions."""
        return self.total_additions - self.total_deductions

    def apply(self, amount: Decimal) -> Decimal:
        return Decimal(str(amount)) + self.net

    def to_dict(self) -> dict[str, Any]:
        return {
            "additions": [a.to_dict() for a in self.additions],
            "deductions": [d.to_dict() for d in self.deductions],
            "total_additions": str(self.total_additions),
            "total_deductions": str(self.total_deductions),
            "net": str(self.net),
        }


class AdjustmentResolver:
    """Read-only resolver over the adjustment store."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def candidates(
        self,
        business_id: UUID,
        employee_id: UUID | None,
        period: PayPeriod,
        *,
        schedule_id: UUID | None = None,
        schedule_only: bool = False,
    ) -> list[Adjustment]:
        """Active adjustments in scope for the payee and period.

        Adjustments tied to a schedule only apply to that schedule. With
        ``schedule_only`` the untied adjustments are left out as well.
        """
        if employee_id is None:
            scope = Adjustment.employee_id.is_(None)
        else:
            scope = or_(
                Adjustment.employee_id.is_(None),
                Adjustment.employee_id == employee_id,
            )

        if schedule_only:
            if schedule_id is None:
                return []
            schedule_scope = Adjustment.schedule_id == schedule_id
        elif schedule_id is None:
            schedule_scope = Adjustment.schedule_id.is_(None)
        else:
            schedule_scope = or_(
                Adjustment.schedule_id.is_(None),
                Adjustment.schedule_id == schedule_id,
            )

        timing = or_(
            and_(Adjustment.period_start.is_(None), Adjustment.period_end.is_(None)),
            and_(
                Adjustment.period_start <= period.end,
                Adjustment.period_end >= period.start,
            ),
        )

        stmt = (
            select(Adjustment)
            .where(
                Adjustment.business_id == business_id,
                Adjustment.is_active.is_(True),
                scope,
                schedule_scope,
                timing,
            )
            .order_by(Adjustment.created_at, Adjustment.adjustment_id)
        )
        return list(self.session.scalars(stmt))

    def resolve(
        self,
        business_id: UUID,
        employee_id: UUID | None,
        period: PayPeriod,
        *,
        reference_base: Decimal,
        schedule_id: UUID | None = None,
        schedule_only: bool = False,
    ) -> ResolvedAdjustments:
        """Resolve applicable adjustments into additions and deductions.

        ``reference_base`` is what percentage adjustments apply to: the
        employee's gross for payroll, the schedule amount for generic
        payments.
        """
        rows = self.candidates(
            business_id,
            employee_id,
            period,
            schedule_id=schedule_id,
            schedule_only=schedule_only,
        )
        return self.apply_precedence(rows, reference_base)

    @staticmethod
    def apply_precedence(
        rows: list[Adjustment], reference_base: Decimal
    ) -> ResolvedAdjustments:
        """Apply the once-off-over-recurring rule and resolve amounts.

        ``rows`` are assumed to be in creation order.
        """
        recurring: dict[tuple[UUID | None, str], list[Adjustment]] = {}
        once_off: dict[tuple[UUID | None, str], Adjustment] = {}

        for row in rows:
            key = (row.employee_id, row.name)
            if row.is_recurring:
                recurring.setdefault(key, []).append(row)
            else:
                # later rows win
                once_off[key] = row

        applied: list[ResolvedAdjustment] = []
        for key, rows_for_key in recurring.items():
            if key in once_off:
                continue
            for row in rows_for_key:
                applied.append(_resolved(row, reference_base))
        for key, row in once_off.items():
            replaced = recurring.get(key)
            applied.append(
                _resolved(
                    row,
                    reference_base,
                    overrides=replaced[0].adjustment_id if replaced else None,
                )
            )

        additions = tuple(a for a in applied if a.direction == "addition")
        deductions = tuple(a for a in applied if a.direction == "deduction")
        return ResolvedAdjustments(additions=additions, deductions=deductions)


def _resolved(
    row: Adjustment, reference_base: Decimal, overrides: UUID | None = None
) -> ResolvedAdjustment:
    return ResolvedAdjustment(
        adjustment_id=row.adjustment_id,
        name=row.name,
        direction=row.direction,
        value_type=row.value_type,
        rate=Decimal(str(row.amount)),
        amount=resolve_amount(row, reference_base),
        employee_id=row.employee_id,
        once_off=not row.is_recurring,
        overrides=overrides,
    )