"""Schedule lifecycle service.

Operations:
- create_schedule: validate descriptor and payees, compute next_run_at
  (payroll: business days only, see scheduling.business_days)
- update_schedule: edit definition; a new descriptor recomputes next_run_at
- pause_schedule / resume_schedule: resume recomputes from now, no backfill
- cancel_schedule: terminal
- preview_pay_period: read-only, the period the next occurrence pays for

The dispatcher owns run state (next_run_at and last_run_at after a run);
this service only sets next_run_at when the definition or status changes.
Each mutation writes exactly one audit entry. The caller owns the
transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from disbursement_engine.errors import InvalidTransitionError, ValidationError
from disbursement_engine.models import Employee, Recipient, Schedule, utcnow
from disbursement_engine.scheduling import cron, non_business_reason
from disbursement_engine.services.audit_log import AuditLog, snapshot
from disbursement_engine.services.context import (
    BusinessContext,
    get_owned,
    require_active_business,
)
from disbursement_engine.services.state_machine import (
    ScheduleStateMachine,
    ScheduleStatus,
)

logger = logging.getLogger(__name__)

KINDS = ("generic", "payroll")


def build_descriptor(
    cron_expression: str | None,
    run_at: datetime | None,
    frequency: str | None,
) -> str:
    """Descriptor from either a raw cron expression or a date and frequency."""
    if cron_expression:
        if run_at is not None or frequency is not None:
            raise ValidationError(
                "Give either cron_expression or run_at/frequency, not both",
                field="cron_expression",
            )
        return cron.validate(cron_expression)
    if run_at is None:
        raise ValidationError("A schedule needs cron_expression or run_at", field="run_at")
    if frequency is None:
        return cron.from_one_time(run_at)
    return cron.from_recurring(run_at, frequency)


def _schedule_snapshot(schedule: Schedule) -> dict[str, Any] | None:
    data = snapshot(schedule)
    if data is not None:
        data["recipient_ids"] = sorted(str(r.recipient_id) for r in schedule.recipients)
        data["employee_ids"] = sorted(str(e.employee_id) for e in schedule.employees)
    return data


class ScheduleService:
    """Create and manage schedules for one business."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.audit = AuditLog(session)

    def get_schedule(self, ctx: BusinessContext, schedule_id: UUID) -> Schedule:
        return get_owned(self.session, Schedule, schedule_id, ctx)

    def list_schedules(
        self, ctx: BusinessContext, status: str | None = None
    ) -> list[Schedule]:
        stmt = select(Schedule).where(Schedule.business_id == ctx.business_id)
        if status is not None:
            stmt = stmt.where(Schedule.status == status)
        return list(self.session.scalars(stmt.order_by(Schedule.created_at)))

    def create_schedule(
        self,
        ctx: BusinessContext,
        *,
        name: str,
        kind: str,
        cron_expression: str | None = None,
        run_at: datetime | None = None,
        frequency: str | None = None,
        amount: Decimal | str | int | None = None,
        currency: str = "ZAR",
        recipient_ids: Sequence[UUID] = (),
        employee_ids: Sequence[UUID] = (),
        description: str | None = None,
        now: datetime | None = None,
    ) -> Schedule:
        now = now or utcnow()
        require_active_business(self.session, ctx)
        if not name or not name.strip():
            raise ValidationError("Schedule name is required", field="name")
        if kind not in KINDS:
            raise ValidationError(f"kind must be one of {', '.join(KINDS)}", field="kind")
        amount_value = self._validate_amount(kind, amount)
        descriptor = build_descriptor(cron_expression, run_at, frequency)
        self._validate_payroll_timing(kind, descriptor, run_at)
        next_run_at = cron.next_run(descriptor, now, business_days=kind == "payroll")
        schedule_type = cron.schedule_type_of(descriptor)
        if next_run_at is None:
            raise ValidationError("One-time schedule must be in the future", field="run_at")

        recipients, employees = self._load_payees(ctx, kind, recipient_ids, employee_ids)

        schedule = Schedule(
            business_id=ctx.business_id,
            kind=kind,
            name=name.strip(),
            description=description,
            amount=amount_value,
            currency=currency.upper(),
            cron_expression=descriptor,
            schedule_type=schedule_type,
            status=ScheduleStatus.ACTIVE.value,
            next_run_at=next_run_at,
        )
        schedule.recipients = recipients
        schedule.employees = employees
        self.session.add(schedule)
        self.session.flush()

        self.audit.record(
            ctx,
            "schedule.created",
            "Schedule",
            schedule.schedule_id,
            after=_schedule_snapshot(schedule),
        )
        logger.info(
            "Created %s %s schedule %s (%s), next run %s",
            schedule_type,
            kind,
            schedule.schedule_id,
            descriptor,
            next_run_at.isoformat(),
        )
        return schedule

    def update_schedule(
        self,
        ctx: BusinessContext,
        schedule_id: UUID,
        *,
        name: str | None = None,
        description: str | None = None,
        amount: Decimal | str | int | None = None,
        cron_expression: str | None = None,
        run_at: datetime | None = None,
        frequency: str | None = None,
        recipient_ids: Sequence[UUID] | None = None,
        employee_ids: Sequence[UUID] | None = None,
        now: datetime | None = None,
    ) -> Schedule:
        now = now or utcnow()
        require_active_business(self.session, ctx)
        schedule = self.get_schedule(ctx, schedule_id)
        if not ScheduleStateMachine.can_edit(schedule.status):
            raise InvalidTransitionError(
                schedule.status, schedule.status, "cancelled schedules cannot be edited"
            )

        if name is not None and not name.strip():
            raise ValidationError("Schedule name is required", field="name")
        amount_value = (
            self._validate_amount(schedule.kind, amount) if amount is not None else None
        )
        descriptor = None
        next_run_at = None
        if cron_expression is not None or run_at is not None or frequency is not None:
            descriptor = build_descriptor(cron_expression, run_at, frequency)
            self._validate_payroll_timing(schedule.kind, descriptor, run_at)
            next_run_at = cron.next_run(
                descriptor, now, business_days=schedule.business_days_only
            )
            if next_run_at is None:
                raise ValidationError("One-time schedule must be in the future", field="run_at")
        recipients, employees = [], []
        if recipient_ids is not None or employee_ids is not None:
            recipients, employees = self._load_payees(
                ctx, schedule.kind, recipient_ids or (), employee_ids or ()
            )

        before = _schedule_snapshot(schedule)
        if name is not None:
            schedule.name = name.strip()
        if description is not None:
            schedule.description = description
        if amount_value is not None:
            schedule.amount = amount_value
        if descriptor is not None:
            schedule.cron_expression = descriptor
            schedule.schedule_type = cron.schedule_type_of(descriptor)
            # Paused schedules get their next run computed on resume.
            if schedule.status == ScheduleStatus.ACTIVE.value:
                schedule.next_run_at = next_run_at
        if recipient_ids is not None:
            schedule.recipients = recipients
        if employee_ids is not None:
            schedule.employees = employees

        self.session.flush()
        self.audit.record(
            ctx,
            "schedule.updated",
            "Schedule",
            schedule.schedule_id,
            before=before,
            after=_schedule_snapshot(schedule),
        )
        return schedule

    def pause_schedule(self, ctx: BusinessContext, schedule_id: UUID) -> Schedule:
        return self._transition(ctx, schedule_id, ScheduleStatus.PAUSED, "schedule.paused")

    def resume_schedule(
        self,
        ctx: BusinessContext,
        schedule_id: UUID,
        now: datetime | None = None,
    ) -> Schedule:
        """Reactivate a paused schedule; missed occurrences are not backfilled."""
        return self._transition(
            ctx, schedule_id, ScheduleStatus.ACTIVE, "schedule.resumed", now=now
        )

    def cancel_schedule(self, ctx: BusinessContext, schedule_id: UUID) -> Schedule:
        return self._transition(ctx, schedule_id, ScheduleStatus.CANCELLED, "schedule.cancelled")

    def preview_pay_period(
        self,
        ctx: BusinessContext,
        schedule_id: UUID,
        now: datetime | None = None,
    ) -> cron.PayPeriod:
        """Period the schedule's next occurrence pays for.

        Falls back to the last run for exhausted one-time schedules.
        """
        schedule = self.get_schedule(ctx, schedule_id)
        occurrence = schedule.next_run_at
        if occurrence is None and schedule.status != ScheduleStatus.CANCELLED:
            occurrence = cron.next_run(
                schedule.cron_expression,
                now or utcnow(),
                business_days=schedule.business_days_only,
            )
        if occurrence is None:
            occurrence = schedule.last_run_at
        if occurrence is None:
            raise ValidationError("Schedule has no upcoming or past occurrence", field="schedule_id")
        return cron.pay_period(schedule.cron_expression, occurrence)

    def _transition(
        self,
        ctx: BusinessContext,
        schedule_id: UUID,
        to_status: ScheduleStatus,
        action: str,
        now: datetime | None = None,
    ) -> Schedule:
        require_active_business(self.session, ctx)
        schedule = self.get_schedule(ctx, schedule_id)
        ScheduleStateMachine.validate_transition(schedule.status, to_status)

        before = _schedule_snapshot(schedule)
        schedule.status = to_status.value
        if to_status == ScheduleStatus.ACTIVE:
            schedule.next_run_at = cron.next_run(
                schedule.cron_expression,
                now or utcnow(),
                business_days=schedule.business_days_only,
            )
        elif to_status == ScheduleStatus.CANCELLED:
            schedule.next_run_at = None
        self.session.flush()

        self.audit.record(
            ctx,
            action,
            "Schedule",
            schedule.schedule_id,
            before=before,
            after=_schedule_snapshot(schedule),
        )
        logger.info("Schedule %s is now %s", schedule.schedule_id, to_status.value)
        return schedule

    @staticmethod
    def _validate_payroll_timing(kind: str, descriptor: str, run_at: datetime | None) -> None:
        """Payroll needs a known pay frequency and a business-day anchor."""
        if kind != "payroll":
            return
        if (
            cron.schedule_type_of(descriptor) == cron.RECURRING
            and cron.frequency_of(descriptor) is None
        ):
            raise ValidationError(
                "Payroll schedules need a daily, weekly, monthly or one-time descriptor",
                field="cron_expression",
            )
        if run_at is not None:
            day = (run_at.astimezone(timezone.utc) if run_at.tzinfo else run_at).date()
            reason = non_business_reason(day)
            if reason is not None:
                raise ValidationError(
                    f"Payroll date {day.isoformat()} is not a business day ({reason})",
                    field="run_at",
                )

    @staticmethod
    def _validate_amount(kind: str, amount: Decimal | str | int | None) -> Decimal | None:
        if kind == "payroll":
            if amount is not None:
                raise ValidationError(
                    "Payroll schedules are priced per employee and take no amount",
                    field="amount",
                )
            return None
        if amount is None:
            raise ValidationError("Generic schedules need an amount", field="amount")
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("Amount must be a number", field="amount") from None
        if not value.is_finite() or value <= 0:
            raise ValidationError("Amount must be positive", field="amount")
        return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def _load_payees(
        self,
        ctx: BusinessContext,
        kind: str,
        recipient_ids: Sequence[UUID],
        employee_ids: Sequence[UUID],
    ) -> tuple[list[Recipient], list[Employee]]:
        if kind == "generic" and employee_ids:
            raise ValidationError("Generic schedules pay recipients, not employees", field="employee_ids")
        if kind == "payroll" and recipient_ids:
            raise ValidationError("Payroll schedules pay employees, not recipients", field="recipient_ids")

        recipients = []
        for recipient_id in dict.fromkeys(recipient_ids):
            recipient = self.session.get(Recipient, recipient_id)
            if recipient is None or recipient.business_id != ctx.business_id:
                raise ValidationError(
                    f"Recipient {recipient_id} does not belong to this business",
                    field="recipient_ids",
                )
            recipients.append(recipient)

        employees = []
        for employee_id in dict.fromkeys(employee_ids):
            employee = self.session.get(Employee, employee_id)
            if employee is None or employee.business_id != ctx.business_id:
                raise ValidationError(
                    f"Employee {employee_id} does not belong to this business",
                    field="employee_ids",
                )
            employees.append(employee)
        return recipients, employees
