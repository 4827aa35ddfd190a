"""Append-only audit log of every state mutation."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from disbursement_engine.models import AuditLogEntry, Base
from disbursement_engine.serialization import json_safe
from disbursement_engine.services.context import BusinessContext

logger = logging.getLogger(__name__)


def snapshot(row: Base | None, exclude: tuple[str, ...] = ()) -> dict[str, Any] | None:
    """JSON-safe copy of a row's columns for before/after images."""
    if row is None:
        return None
    return json_safe({k: v for k, v in row.to_dict().items() if k not in exclude})


class AuditLog:
    """Writes and reads audit entries within the caller's session.

    The entry is flushed with the caller's transaction, so it commits or
    rolls back together with the mutation it describes.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def record(
        self,
        ctx: BusinessContext,
        action: str,
        subject_type: str,
        subject_id: UUID,
        *,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            business_id=ctx.business_id,
            actor=ctx.actor,
            action=action,
            subject_type=subject_type,
            subject_id=subject_id,
            before=json_safe(before) if before is not None else None,
            after=json_safe(after) if after is not None else None,
            correlation_id=ctx.correlation_id,
        )
        self.session.add(entry)
        self.session.flush()
        logger.debug("Audit %s %s %s by %s", action, subject_type, subject_id, ctx.actor)
        return entry

    def entries_for(
        self,
        business_id: UUID,
        *,
        subject_id: UUID | None = None,
        action: str | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        """Entries for a business, oldest first."""
        stmt = select(AuditLogEntry).where(AuditLogEntry.business_id == business_id)
        if subject_id is not None:
            stmt = stmt.where(AuditLogEntry.subject_id == subject_id)
        if action is not None:
            stmt = stmt.where(AuditLogEntry.action == action)
        stmt = stmt.order_by(AuditLogEntry.created_at, AuditLogEntry.audit_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt))
