"""API routes."""

from disbursement_engine.api.routes.adjustments import router as adjustments_router
from disbursement_engine.api.routes.escrow import router as escrow_router
from disbursement_engine.api.routes.health import router as health_router
from disbursement_engine.api.routes.schedules import router as schedules_router

__all__ = ["adjustments_router", "escrow_router", "health_router", "schedules_router"]
