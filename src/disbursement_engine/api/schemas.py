"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Error body returned for every engine error."""

    detail: str
    code: str


# ============================================================================
# Schedule schemas
# ============================================================================


class ScheduleCreate(BaseModel):
    """Schema for creating a schedule.

    Give either ``cron_expression`` or ``run_at`` (with ``frequency`` for a
    recurring schedule, without it for a one-time payment).
    """

    name: str = Field(min_length=1)
    kind: str = "generic"
    description: str | None = None
    amount: Decimal | None = None
    currency: str = Field(default="ZAR", min_length=3, max_length=3)
    cron_expression: str | None = None
    run_at: datetime | None = None
    frequency: str | None = None
    recipient_ids: list[UUID] = Field(default_factory=list)
    employee_ids: list[UUID] = Field(default_factory=list)


class ScheduleUpdate(BaseModel):
    """Schema for editing a schedule; omitted fields are left unchanged."""

    name: str | None = None
    description: str | None = None
    amount: Decimal | None = None
    cron_expression: str | None = None
    run_at: datetime | None = None
    frequency: str | None = None
    recipient_ids: list[UUID] | None = None
    employee_ids: list[UUID] | None = None


class ScheduleResponse(BaseModel):
    """Schema for schedule response."""

    model_config = ConfigDict(from_attributes=True)

    schedule_id: UUID
    business_id: UUID
    kind: str
    name: str
    description: str | None = None
    amount: Decimal | None = None
    currency: str
    cron_expression: str
    schedule_type: str
    status: str
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class PayPeriodResponse(BaseModel):
    """Pay period of a schedule's next occurrence."""

    schedule_id: UUID
    period_start: date
    period_end: date


# ============================================================================
# Adjustment schemas
# ============================================================================


class AdjustmentCreate(BaseModel):
    """Schema for creating an adjustment."""

    name: str = Field(min_length=1)
    value_type: str
    amount: Decimal
    direction: str
    employee_id: UUID | None = None
    schedule_id: UUID | None = None
    period_start: date | None = None
    period_end: date | None = None
    description: str | None = None


class AdjustmentUpdate(BaseModel):
    """Schema for editing an adjustment; omitted fields are left unchanged."""

    name: str | None = None
    description: str | None = None
    value_type: str | None = None
    amount: Decimal | None = None
    direction: str | None = None
    schedule_id: UUID | None = None
    period_start: date | None = None
    period_end: date | None = None


class TemporaryChange(BaseModel):
    """Once-off override of a recurring adjustment."""

    amount: Decimal
    period_start: date
    period_end: date
    schedule_id: UUID | None = None


class AdjustmentResponse(BaseModel):
    """Schema for adjustment response."""

    model_config = ConfigDict(from_attributes=True)

    adjustment_id: UUID
    business_id: UUID
    employee_id: UUID | None = None
    schedule_id: UUID | None = None
    name: str
    description: str | None = None
    value_type: str
    amount: Decimal
    direction: str
    period_start: date | None = None
    period_end: date | None = None
    is_active: bool
    created_at: datetime


# ============================================================================
# Escrow schemas
# ============================================================================


class DepositCreate(BaseModel):
    """Schema for recording an escrow deposit."""

    amount: Decimal
    currency: str | None = None
    bank_reference: str | None = None


class DepositConfirm(BaseModel):
    """Bank confirmation of a deposit."""

    bank_reference: str | None = None


class DepositReject(BaseModel):
    """Rejection of a pending deposit."""

    reason: str = Field(min_length=1)


class DepositResponse(BaseModel):
    """Schema for escrow deposit response."""

    model_config = ConfigDict(from_attributes=True)

    deposit_id: UUID
    business_id: UUID
    amount: Decimal
    fee_amount: Decimal
    authorized_amount: Decimal
    currency: str
    status: str
    bank_reference: str | None = None
    rejection_reason: str | None = None
    completed_at: datetime | None = None
    created_at: datetime


class BalanceResponse(BaseModel):
    """Escrow balance with its components."""

    business_id: UUID
    deposited: Decimal
    reserved: Decimal
    consumed: Decimal
    pending_deposits: Decimal
    available: Decimal

    @classmethod
    def from_breakdown(cls, breakdown: Any) -> "BalanceResponse":
        return cls(
            business_id=breakdown.business_id,
            deposited=breakdown.deposited,
            reserved=breakdown.reserved,
            consumed=breakdown.consumed,
            pending_deposits=breakdown.pending_deposits,
            available=breakdown.available,
        )


class ForecastResponse(BaseModel):
    """Escrow against the schedules due before ``window_end``."""

    business_id: UUID
    window_end: datetime
    schedule_ids: list[UUID]
    required: Decimal
    available: Decimal
    shortfall: Decimal

    @classmethod
    def from_forecast(cls, forecast: Any) -> "ForecastResponse":
        return cls(
            business_id=forecast.business_id,
            window_end=forecast.window_end,
            schedule_ids=list(forecast.schedule_ids),
            required=forecast.required,
            available=forecast.available,
            shortfall=forecast.shortfall,
        )
