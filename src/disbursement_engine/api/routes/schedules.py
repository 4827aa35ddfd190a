"""Schedule API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from disbursement_engine.api.dependencies import Context, DbSession
from disbursement_engine.api.schemas import (
    ErrorResponse,
    PayPeriodResponse,
    ScheduleCreate,
    ScheduleResponse,
    ScheduleUpdate,
)
from disbursement_engine.services.schedule_service import ScheduleService

router = APIRouter(prefix="/schedules", tags=["schedules"])


@router.post(
    "",
    response_model=ScheduleResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
def create_schedule(
    db: DbSession,
    ctx: Context,
    payload: ScheduleCreate,
) -> ScheduleResponse:
    """Create an active schedule and compute its first run."""
    schedule = ScheduleService(db).create_schedule(ctx, **payload.model_dump())
    return ScheduleResponse.model_validate(schedule)


@router.get("", response_model=list[ScheduleResponse])
def list_schedules(
    db: DbSession,
    ctx: Context,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> list[ScheduleResponse]:
    """List the business's schedules."""
    schedules = ScheduleService(db).list_schedules(ctx, status=status_filter)
    return [ScheduleResponse.model_validate(s) for s in schedules]


@router.get(
    "/{schedule_id}",
    response_model=ScheduleResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_schedule(
    db: DbSession,
    ctx: Context,
    schedule_id: Annotated[UUID, Path()],
) -> ScheduleResponse:
    """Get a specific schedule by ID."""
    return ScheduleResponse.model_validate(ScheduleService(db).get_schedule(ctx, schedule_id))


@router.patch(
    "/{schedule_id}",
    response_model=ScheduleResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def update_schedule(
    db: DbSession,
    ctx: Context,
    schedule_id: Annotated[UUID, Path()],
    payload: ScheduleUpdate,
) -> ScheduleResponse:
    """Edit a schedule's definition."""
    schedule = ScheduleService(db).update_schedule(
        ctx, schedule_id, **payload.model_dump(exclude_unset=True)
    )
    return ScheduleResponse.model_validate(schedule)


@router.post(
    "/{schedule_id}/pause",
    response_model=ScheduleResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def pause_schedule(
    db: DbSession,
    ctx: Context,
    schedule_id: Annotated[UUID, Path()],
) -> ScheduleResponse:
    """Pause an active schedule."""
    return ScheduleResponse.model_validate(ScheduleService(db).pause_schedule(ctx, schedule_id))


@router.post(
    "/{schedule_id}/resume",
    response_model=ScheduleResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def resume_schedule(
    db: DbSession,
    ctx: Context,
    schedule_id: Annotated[UUID, Path()],
) -> ScheduleResponse:
    """Resume a paused schedule from now on."""
    return ScheduleResponse.model_validate(ScheduleService(db).resume_schedule(ctx, schedule_id))


@router.post(
    "/{schedule_id}/cancel",
    response_model=ScheduleResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def cancel_schedule(
    db: DbSession,
    ctx: Context,
    schedule_id: Annotated[UUID, Path()],
) -> ScheduleResponse:
    """Cancel a schedule permanently."""
    return ScheduleResponse.model_validate(ScheduleService(db).cancel_schedule(ctx, schedule_id))


@router.get(
    "/{schedule_id}/pay-period",
    response_model=PayPeriodResponse,
    responses={404: {"model": ErrorResponse}},
)
def preview_pay_period(
    db: DbSession,
    ctx: Context,
    schedule_id: Annotated[UUID, Path()],
) -> PayPeriodResponse:
    """Period the schedule's next occurrence pays for."""
    period = ScheduleService(db).preview_pay_period(ctx, schedule_id)
    return PayPeriodResponse(
        schedule_id=schedule_id,
        period_start=period.start,
        period_end=period.end,
    )
