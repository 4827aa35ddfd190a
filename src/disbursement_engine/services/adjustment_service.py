"""Validated write path for adjustments.

Operations:
- create_adjustment: recurring or once-off, company-wide or per employee
- update_adjustment: change amount, name, direction or period
- delete_adjustment: deactivate, keeping the row for historical jobs
- temporarily_change_adjustment: once-off override of a recurring adjustment

All validation happens before any mutation, and each call writes exactly one
audit entry. The caller owns the transaction.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from disbursement_engine.errors import DuplicateExecutionError, ValidationError
from disbursement_engine.models import Adjustment, Employee, Schedule
from disbursement_engine.services.audit_log import AuditLog, snapshot
from disbursement_engine.services.context import (
    BusinessContext,
    get_owned,
    require_active_business,
)

logger = logging.getLogger(__name__)

VALUE_TYPES = ("fixed", "percentage")
DIRECTIONS = ("addition", "deduction")
UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "value_type",
        "amount",
        "direction",
        "period_start",
        "period_end",
        "schedule_id",
    }
)


def _money(value: Any, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", field=field) from None
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field)
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def validate_values(
    *,
    name: str,
    value_type: str,
    amount: Decimal,
    direction: str,
    period_start: date | None,
    period_end: date | None,
) -> None:
    """Field-level checks shared by create, update and temporary change."""
    if not name or not name.strip():
        raise ValidationError("Adjustment name is required", field="name")
    if value_type not in VALUE_TYPES:
        raise ValidationError(
            f"value_type must be one of {', '.join(VALUE_TYPES)}", field="value_type"
        )
    if direction not in DIRECTIONS:
        raise ValidationError(
            f"direction must be one of {', '.join(DIRECTIONS)}", field="direction"
        )
    if amount < 0:
        raise ValidationError("Amount cannot be negative", field="amount")
    if value_type == "percentage" and amount > 100:
        raise ValidationError("Percentage cannot exceed 100", field="amount")
    if (period_start is None) != (period_end is None):
        raise ValidationError(
            "period_start and period_end must both be set or both be empty",
            field="period_start" if period_start is None else "period_end",
        )
    if period_start is not None and period_end is not None and period_start > period_end:
        raise ValidationError("period_start must not be after period_end", field="period_start")


class AdjustmentService:
    """Create, update and remove adjustments for one business."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.audit = AuditLog(session)

    def get_adjustment(self, ctx: BusinessContext, adjustment_id: UUID) -> Adjustment:
        return get_owned(self.session, Adjustment, adjustment_id, ctx)

    def list_adjustments(
        self,
        ctx: BusinessContext,
        *,
        employee_id: UUID | None = None,
        include_inactive: bool = False,
    ) -> list[Adjustment]:
        stmt = select(Adjustment).where(Adjustment.business_id == ctx.business_id)
        if employee_id is not None:
            stmt = stmt.where(Adjustment.employee_id == employee_id)
        if not include_inactive:
            stmt = stmt.where(Adjustment.is_active.is_(True))
        return list(self.session.scalars(stmt.order_by(Adjustment.created_at)))

    def create_adjustment(
        self,
        ctx: BusinessContext,
        *,
        name: str,
        value_type: str,
        amount: Decimal | str | int,
        direction: str,
        employee_id: UUID | None = None,
        schedule_id: UUID | None = None,
        period_start: date | None = None,
        period_end: date | None = None,
        description: str | None = None,
    ) -> Adjustment:
        require_active_business(self.session, ctx)
        amount = _money(amount, "amount")
        validate_values(
            name=name,
            value_type=value_type,
            amount=amount,
            direction=direction,
            period_start=period_start,
            period_end=period_end,
        )
        self._validate_scope(ctx, employee_id, schedule_id)
        self._check_duplicate(employee_id, schedule_id, period_start, period_end)

        adjustment = Adjustment(
            business_id=ctx.business_id,
            employee_id=employee_id,
            schedule_id=schedule_id,
            name=name.strip(),
            description=description,
            value_type=value_type,
            amount=amount,
            direction=direction,
            period_start=period_start,
            period_end=period_end,
            is_active=True,
        )
        self.session.add(adjustment)
        self.session.flush()

        self.audit.record(
            ctx,
            "adjustment.created",
            "Adjustment",
            adjustment.adjustment_id,
            after=snapshot(adjustment),
        )
        logger.info(
            "Created %s adjustment %s (%s) for business %s",
            "recurring" if adjustment.is_recurring else "once-off",
            adjustment.adjustment_id,
            adjustment.name,
            ctx.business_id,
        )
        return adjustment

    def update_adjustment(
        self,
        ctx: BusinessContext,
        adjustment_id: UUID,
        **changes: Any,
    ) -> Adjustment:
        require_active_business(self.session, ctx)
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Cannot update field(s): {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )

        adjustment = self.get_adjustment(ctx, adjustment_id)
        if not adjustment.is_active:
            raise ValidationError("Adjustment has been deleted", field="adjustment_id")

        merged = {
            "name": changes.get("name", adjustment.name),
            "value_type": changes.get("value_type", adjustment.value_type),
            "amount": _money(changes.get("amount", adjustment.amount), "amount"),
            "direction": changes.get("direction", adjustment.direction),
            "period_start": changes.get("period_start", adjustment.period_start),
            "period_end": changes.get("period_end", adjustment.period_end),
        }
        validate_values(**merged)
        schedule_id = changes.get("schedule_id", adjustment.schedule_id)
        self._validate_scope(ctx, adjustment.employee_id, schedule_id)
        self._check_duplicate(
            adjustment.employee_id,
            schedule_id,
            merged["period_start"],
            merged["period_end"],
            exclude_id=adjustment.adjustment_id,
        )

        before = snapshot(adjustment)
        for field, value in merged.items():
            setattr(adjustment, field, value.strip() if field == "name" else value)
        adjustment.schedule_id = schedule_id
        if "description" in changes:
            adjustment.description = changes["description"]
        self.session.flush()

        self.audit.record(
            ctx,
            "adjustment.updated",
            "Adjustment",
            adjustment.adjustment_id,
            before=before,
            after=snapshot(adjustment),
        )
        return adjustment

    def delete_adjustment(self, ctx: BusinessContext, adjustment_id: UUID) -> Adjustment:
        """Deactivate an adjustment; it stops resolving from now on."""
        require_active_business(self.session, ctx)
        adjustment = self.get_adjustment(ctx, adjustment_id)
        if not adjustment.is_active:
            raise ValidationError("Adjustment has already been deleted", field="adjustment_id")

        before = snapshot(adjustment)
        adjustment.is_active = False
        self.session.flush()

        self.audit.record(
            ctx,
            "adjustment.deleted",
            "Adjustment",
            adjustment.adjustment_id,
            before=before,
            after=snapshot(adjustment),
        )
        return adjustment

    def temporarily_change_adjustment(
        self,
        ctx: BusinessContext,
        adjustment_id: UUID,
        *,
        amount: Decimal | str | int,
        period_start: date,
        period_end: date,
        schedule_id: UUID | None = None,
    ) -> Adjustment:
        """Override a recurring adjustment for one period.

        The recurring adjustment is left untouched; a once-off copy with the
        same name and scope carries the new amount and takes precedence for
        the periods it overlaps.
        """
        require_active_business(self.session, ctx)
        original = self.get_adjustment(ctx, adjustment_id)
        if not original.is_active:
            raise ValidationError("Adjustment has been deleted", field="adjustment_id")
        if not original.is_recurring:
            raise ValidationError(
                "Only recurring adjustments can be temporarily changed",
                field="adjustment_id",
            )
        if period_start is None or period_end is None:
            raise ValidationError("A temporary change needs a period", field="period_start")

        new_amount = _money(amount, "amount")
        validate_values(
            name=original.name,
            value_type=original.value_type,
            amount=new_amount,
            direction=original.direction,
            period_start=period_start,
            period_end=period_end,
        )
        schedule_id = schedule_id if schedule_id is not None else original.schedule_id
        self._validate_scope(ctx, original.employee_id, schedule_id)
        self._check_duplicate(original.employee_id, schedule_id, period_start, period_end)

        override = Adjustment(
            business_id=ctx.business_id,
            employee_id=original.employee_id,
            schedule_id=schedule_id,
            name=original.name,
            description=f"Temporary change of {original.name}",
            value_type=original.value_type,
            amount=new_amount,
            direction=original.direction,
            period_start=period_start,
            period_end=period_end,
            is_active=True,
        )
        self.session.add(override)
        self.session.flush()

        after = snapshot(override) or {}
        after["original_adjustment_id"] = str(original.adjustment_id)
        after["original_amount"] = str(original.amount)
        self.audit.record(
            ctx,
            "adjustment.temporarily_changed",
            "Adjustment",
            override.adjustment_id,
            before=snapshot(original),
            after=after,
        )
        logger.info(
            "Temporarily changed %s from %s to %s for %s..%s",
            original.name,
            original.amount,
            new_amount,
            period_start,
            period_end,
        )
        return override

    def _validate_scope(
        self,
        ctx: BusinessContext,
        employee_id: UUID | None,
        schedule_id: UUID | None,
    ) -> None:
        if employee_id is not None:
            employee = self.session.get(Employee, employee_id)
            if employee is None or employee.business_id != ctx.business_id:
                raise ValidationError(
                    "Employee does not belong to this business", field="employee_id"
                )
        if schedule_id is not None:
            schedule = self.session.get(Schedule, schedule_id)
            if schedule is None or schedule.business_id != ctx.business_id:
                raise ValidationError(
                    "Schedule does not belong to this business", field="schedule_id"
                )
            if employee_id is not None and schedule.kind != "payroll":
                raise ValidationError(
                    "Employee adjustments can only be tied to payroll schedules",
                    field="schedule_id",
                )

    def _check_duplicate(
        self,
        employee_id: UUID | None,
        schedule_id: UUID | None,
        period_start: date | None,
        period_end: date | None,
        exclude_id: UUID | None = None,
    ) -> None:
        """One once-off per employee, schedule and period."""
        if employee_id is None or schedule_id is None or period_start is None:
            return
        stmt = select(Adjustment.adjustment_id).where(
            Adjustment.employee_id == employee_id,
            Adjustment.schedule_id == schedule_id,
            Adjustment.period_start == period_start,
            Adjustment.period_end == period_end,
            Adjustment.is_active.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(Adjustment.adjustment_id != exclude_id)
        existing = self.session.scalars(stmt).first()
        if existing is not None:
            raise DuplicateExecutionError(
                "A once-off adjustment already exists for this employee, schedule and period",
                existing_adjustment_id=str(existing),
            )
