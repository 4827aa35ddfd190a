"""Escrow API endpoints."""

from datetime import timedelta
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, Request, status

from disbursement_engine.api.dependencies import Context, DbSession
from disbursement_engine.api.schemas import (
    BalanceResponse,
    DepositConfirm,
    DepositCreate,
    DepositReject,
    DepositResponse,
    ErrorResponse,
    ForecastResponse,
)
from disbursement_engine.models import utcnow
from disbursement_engine.services.escrow_ledger import EscrowLedger
from disbursement_engine.services.funding_forecast import FundingForecast

router = APIRouter(prefix="/escrow", tags=["escrow"])


def _ledger(request: Request, db: DbSession) -> EscrowLedger:
    return EscrowLedger(db, request.app.state.escrow_config)


@router.post(
    "/deposits",
    response_model=DepositResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def create_deposit(
    request: Request,
    db: DbSession,
    ctx: Context,
    payload: DepositCreate,
) -> DepositResponse:
    """Record a pending escrow deposit; the platform fee is withheld up front."""
    deposit = _ledger(request, db).create_deposit(
        ctx,
        payload.amount,
        currency=payload.currency,
        bank_reference=payload.bank_reference,
    )
    return DepositResponse.model_validate(deposit)


@router.post(
    "/deposits/{deposit_id}/confirm",
    response_model=DepositResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def confirm_deposit(
    request: Request,
    db: DbSession,
    ctx: Context,
    deposit_id: Annotated[UUID, Path()],
    payload: DepositConfirm | None = None,
) -> DepositResponse:
    """Mark a deposit completed; its authorized amount becomes spendable."""
    deposit = _ledger(request, db).confirm_deposit(
        ctx,
        deposit_id,
        bank_reference=payload.bank_reference if payload else None,
    )
    return DepositResponse.model_validate(deposit)


@router.post(
    "/deposits/{deposit_id}/reject",
    response_model=DepositResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def reject_deposit(
    request: Request,
    db: DbSession,
    ctx: Context,
    deposit_id: Annotated[UUID, Path()],
    payload: DepositReject,
) -> DepositResponse:
    """Reject a pending deposit."""
    deposit = _ledger(request, db).reject_deposit(ctx, deposit_id, payload.reason)
    return DepositResponse.model_validate(deposit)


@router.get("/balance", response_model=BalanceResponse)
def get_balance(
    request: Request,
    db: DbSession,
    ctx: Context,
) -> BalanceResponse:
    """Available escrow balance with its components."""
    breakdown = _ledger(request, db).balance_breakdown(ctx.business_id)
    return BalanceResponse.from_breakdown(breakdown)


@router.get("/forecast", response_model=ForecastResponse)
def get_forecast(
    request: Request,
    db: DbSession,
    ctx: Context,
    days: Annotated[int, Query(ge=1, le=90)] = 7,
) -> ForecastResponse:
    """Escrow needed by active schedules due in the next ``days`` days."""
    forecaster = FundingForecast(db, ledger=_ledger(request, db))
    forecast = forecaster.for_business(ctx.business_id, utcnow() + timedelta(days=days))
    return ForecastResponse.from_forecast(forecast)
