"""Caller context passed explicitly to every exposed operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from disbursement_engine.errors import BusinessNotActiveError, NotFoundError
from disbursement_engine.models import Base, Business

T = TypeVar("T", bound=Base)

SYSTEM_ACTOR = "system:dispatcher"


@dataclass(frozen=True)
class BusinessContext:
    """Tenant and acting identity for one call.

    ``correlation_id`` links the audit entries and events produced by the
    call.
    """

    business_id: UUID
    actor: str
    correlation_id: UUID = field(default_factory=uuid4)

    @classmethod
    def system(cls, business_id: UUID) -> BusinessContext:
        return cls(business_id=business_id, actor=SYSTEM_ACTOR)


def require_active_business(session: Session, ctx: BusinessContext) -> Business:
    """Load the caller's business, rejecting writes unless it is active."""
    business = session.get(Business, ctx.business_id)
    if business is None:
        raise NotFoundError("Business", ctx.business_id)
    if not business.can_perform_actions:
        raise BusinessNotActiveError(business.business_id, business.status)
    return business


def get_owned(session: Session, model: type[T], subject_id: UUID, ctx: BusinessContext) -> T:
    """Load a row by id, treating rows of other businesses as missing."""
    row = session.get(model, subject_id)
    if row is None or row.business_id != ctx.business_id:  # type: ignore[attr-defined]
        raise NotFoundError(model.__name__, subject_id)
    return row
