"""Funding forecast - will escrow cover the schedules due soon?

For each business with active schedules due before the end of the window,
the estimated draw of one occurrence per schedule is compared with the
available escrow balance. Estimates use gross salary for payroll, so a
forecast errs toward warning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from itertools import groupby
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from disbursement_engine.models import Business, Schedule
from disbursement_engine.services.escrow_ledger import EscrowLedger
from disbursement_engine.services.payout_calculator import PayoutCalculator
from disbursement_engine.services.state_machine import ScheduleStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceForecast:
    """Upcoming requirement against the available balance of one business."""

    business_id: UUID
    window_end: datetime
    schedule_ids: tuple[UUID, ...]
    required: Decimal
    available: Decimal

    @property
    def shortfall(self) -> Decimal:
        return max(self.required - self.available, Decimal("0.00"))

    @property
    def is_short(self) -> bool:
        return self.required > self.available

    def to_dict(self) -> dict[str, object]:
        return {
            "business_id": str(self.business_id),
            "window_end": self.window_end.isoformat(),
            "schedule_ids": [str(s) for s in self.schedule_ids],
            "required": str(self.required),
            "available": str(self.available),
            "shortfall": str(self.shortfall),
        }


class FundingForecast:
    def __init__(
        self,
        session: Session,
        ledger: EscrowLedger | None = None,
        calculator: PayoutCalculator | None = None,
    ) -> None:
        self.session = session
        self.ledger = ledger or EscrowLedger(session)
        self.calculator = calculator or PayoutCalculator(session)

    def _upcoming(self, window_end: datetime, business_id: UUID | None) -> list[Schedule]:
        stmt = (
            select(Schedule)
            .join(Business, Business.business_id == Schedule.business_id)
            .where(
                Business.status == "active",
                Schedule.status == ScheduleStatus.ACTIVE.value,
                Schedule.next_run_at.is_not(None),
                Schedule.next_run_at <= window_end,
            )
            .order_by(Schedule.business_id, Schedule.next_run_at, Schedule.schedule_id)
        )
        if business_id is not None:
            stmt = stmt.where(Schedule.business_id == business_id)
        return list(self.session.scalars(stmt).all())

    def for_business(self, business_id: UUID, window_end: datetime) -> BalanceForecast:
        """Forecast one business; schedules overdue already count as upcoming."""
        schedules = self._upcoming(window_end, business_id)
        return self._forecast(business_id, window_end, schedules)

    def all_businesses(self, window_end: datetime) -> list[BalanceForecast]:
        return [
            self._forecast(business_id, window_end, list(group))
            for business_id, group in groupby(
                self._upcoming(window_end, None), key=lambda s: s.business_id
            )
        ]

    def _forecast(
        self,
        business_id: UUID,
        window_end: datetime,
        schedules: list[Schedule],
    ) -> BalanceForecast:
        required = sum(
            (self.calculator.estimate_occurrence(schedule) for schedule in schedules),
            Decimal("0.00"),
        )
        forecast = BalanceForecast(
            business_id=business_id,
            window_end=window_end,
            schedule_ids=tuple(schedule.schedule_id for schedule in schedules),
            required=required,
            available=self.ledger.available_balance(business_id),
        )
        logger.debug(
            "Forecast for business %s until %s: required=%s available=%s",
            business_id,
            window_end.isoformat(),
            forecast.required,
            forecast.available,
        )
        return forecast
