"""Adjustment API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from disbursement_engine.api.dependencies import Context, DbSession
from disbursement_engine.api.schemas import (
    AdjustmentCreate,
    AdjustmentResponse,
    AdjustmentUpdate,
    ErrorResponse,
    TemporaryChange,
)
from disbursement_engine.services.adjustment_service import AdjustmentService

router = APIRouter(prefix="/adjustments", tags=["adjustments"])


@router.post(
    "",
    response_model=AdjustmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def create_adjustment(
    db: DbSession,
    ctx: Context,
    payload: AdjustmentCreate,
) -> AdjustmentResponse:
    """Create a recurring or once-off adjustment."""
    adjustment = AdjustmentService(db).create_adjustment(ctx, **payload.model_dump())
    return AdjustmentResponse.model_validate(adjustment)


@router.get("", response_model=list[AdjustmentResponse])
def list_adjustments(
    db: DbSession,
    ctx: Context,
    employee_id: UUID | None = None,
    include_inactive: Annotated[bool, Query()] = False,
) -> list[AdjustmentResponse]:
    """List the business's adjustments."""
    adjustments = AdjustmentService(db).list_adjustments(
        ctx, employee_id=employee_id, include_inactive=include_inactive
    )
    return [AdjustmentResponse.model_validate(a) for a in adjustments]


@router.patch(
    "/{adjustment_id}",
    response_model=AdjustmentResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def update_adjustment(
    db: DbSession,
    ctx: Context,
    adjustment_id: Annotated[UUID, Path()],
    payload: AdjustmentUpdate,
) -> AdjustmentResponse:
    """Edit an adjustment."""
    adjustment = AdjustmentService(db).update_adjustment(
        ctx, adjustment_id, **payload.model_dump(exclude_unset=True)
    )
    return AdjustmentResponse.model_validate(adjustment)


@router.delete(
    "/{adjustment_id}",
    response_model=AdjustmentResponse,
    responses={404: {"model": ErrorResponse}},
)
def delete_adjustment(
    db: DbSession,
    ctx: Context,
    adjustment_id: Annotated[UUID, Path()],
) -> AdjustmentResponse:
    """Deactivate an adjustment."""
    adjustment = AdjustmentService(db).delete_adjustment(ctx, adjustment_id)
    return AdjustmentResponse.model_validate(adjustment)


@router.post(
    "/{adjustment_id}/temporary-change",
    response_model=AdjustmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def temporarily_change_adjustment(
    db: DbSession,
    ctx: Context,
    adjustment_id: Annotated[UUID, Path()],
    payload: TemporaryChange,
) -> AdjustmentResponse:
    """Override a recurring adjustment for one period."""
    override = AdjustmentService(db).temporarily_change_adjustment(
        ctx, adjustment_id, **payload.model_dump()
    )
    return AdjustmentResponse.model_validate(override)
