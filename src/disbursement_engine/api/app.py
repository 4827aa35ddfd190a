"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from disbursement_engine.api.routes import (
    adjustments_router,
    escrow_router,
    health_router,
    schedules_router,
)
from disbursement_engine.config import EscrowConfig, get_settings
from disbursement_engine.database import create_schema, create_session_factory, get_engine
from disbursement_engine.errors import (
    BusinessNotActiveError,
    ConfigurationError,
    DisbursementError,
    DuplicateExecutionError,
    ImmutableRecordError,
    InsufficientFundsError,
    LockTimeoutError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first; the first match wins.
ERROR_STATUS: list[tuple[type[DisbursementError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (BusinessNotActiveError, status.HTTP_403_FORBIDDEN),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConfigurationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (DuplicateExecutionError, status.HTTP_409_CONFLICT),
    (ImmutableRecordError, status.HTTP_409_CONFLICT),
    (InsufficientFundsError, status.HTTP_402_PAYMENT_REQUIRED),
    (LockTimeoutError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: DisbursementError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


def _lifespan_for(engine: Engine):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        # Startup
        create_schema(engine)
        yield
        # Shutdown
        engine.dispose()

    return lifespan


def create_app(
    session_factory: sessionmaker[Session] | None = None,
    escrow_config: EscrowConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Without a session factory, the database from the environment settings is
    used and its schema is created on startup.
    """
    lifespan = None
    if session_factory is None:
        settings = get_settings()
        engine = get_engine(settings.database_url)
        session_factory = create_session_factory(engine)
        escrow_config = escrow_config or settings.escrow_config()
        lifespan = _lifespan_for(engine)

    app = FastAPI(
        title="Disbursement Engine API",
        description="Escrow-backed scheduled disbursements and payroll",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory
    app.state.escrow_config = escrow_config or EscrowConfig()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(DisbursementError)
    async def engine_error_handler(request: Request, exc: DisbursementError) -> JSONResponse:
        """Map engine errors to their HTTP status with a typed body."""
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(schedules_router, prefix="/api/v1")
    app.include_router(adjustments_router, prefix="/api/v1")
    app.include_router(escrow_router, prefix="/api/v1")

    return app
