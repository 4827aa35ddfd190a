"""FastAPI dependencies for dependency injection."""

from collections.abc import Iterator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from disbursement_engine.services.context import BusinessContext


def get_db_session(request: Request) -> Iterator[Session]:
    """One session per request; commits when the endpoint returns normally."""
    session = request.app.state.session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_business_id(
    x_business_id: Annotated[str | None, Header()] = None
) -> UUID:
    """Extract business ID from header."""
    if not x_business_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Business-ID header is required",
        )
    try:
        return UUID(x_business_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Business-ID format",
        )


def get_business_context(
    business_id: Annotated[UUID, Depends(get_business_id)],
    x_actor: Annotated[str | None, Header()] = None,
) -> BusinessContext:
    """Caller context from the business and actor headers."""
    if not x_actor or not x_actor.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor header is required",
        )
    return BusinessContext(business_id=business_id, actor=x_actor.strip())


# Type aliases for cleaner dependency injection
DbSession = Annotated[Session, Depends(get_db_session)]
BusinessId = Annotated[UUID, Depends(get_business_id)]
Context = Annotated[BusinessContext, Depends(get_business_context)]
