"""Liveness, readiness and database health endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError

from disbursement_engine import __version__
from disbursement_engine.api.dependencies import DbSession
from disbursement_engine.models import Business

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health of the API process and its database."""

    status: str
    version: str
    timestamp: datetime
    database: str


@router.get("/health", response_model=HealthResponse)
def health_check(db: DbSession) -> HealthResponse:
    """Report ``degraded`` instead of failing when the database is down."""
    try:
        db.execute(text("SELECT 1"))
        database = "healthy"
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Database health check failed")
        database = "unhealthy"

    return HealthResponse(
        status="healthy" if database == "healthy" else "degraded",
        version=__version__,
        timestamp=datetime.now(timezone.utc),
        database=database,
    )


@router.get("/ready")
def readiness_check(db: DbSession) -> JSONResponse:
    """Ready once the engine's tables exist."""
    try:
        db.execute(select(Business.business_id).limit(1))
    except SQLAlchemyError:
        db.rollback()
        logger.warning("Not ready: schema missing or database unreachable")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready"},
        )
    return JSONResponse(content={"status": "ready"})


@router.get("/live")
def liveness_check() -> dict[str, str]:
    """The process is up; no dependencies are checked."""
    return {"status": "alive"}
