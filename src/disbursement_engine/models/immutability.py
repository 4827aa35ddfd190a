"""ORM-level immutability enforcement.

SQLAlchemy fires ``before_update`` / ``before_delete`` before SQL reaches the
database. The listeners below abort the flush when code tries to change:

* any ``AuditLogEntry`` (append-only from creation)
* a ``Job`` that was already ``succeeded`` when loaded
* an ``EscrowDeposit`` that was already ``completed`` when loaded
"""

from __future__ import annotations

import logging

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from disbursement_engine.errors import ImmutableRecordError
from disbursement_engine.models.audit import AuditLogEntry
from disbursement_engine.models.escrow import EscrowDeposit
from disbursement_engine.models.schedule import Job

logger = logging.getLogger(__name__)


def _status_before_update(target: object) -> str:
    history = get_history(target, "status")
    if history.deleted:
        return history.deleted[0]
    return target.status  # type: ignore[attr-defined]


def _block(subject_type: str, subject_id: object, operation: str) -> None:
    logger.error(
        "Blocked %s of immutable %s %s", operation, subject_type, subject_id
    )
    raise ImmutableRecordError(subject_type, subject_id, operation)


@event.listens_for(AuditLogEntry, "before_update")
def _audit_entry_update(mapper, connection, target: AuditLogEntry) -> None:
    if any(attr.history.has_changes() for attr in inspect(target).attrs):
        _block("AuditLogEntry", target.audit_id, "update")


@event.listens_for(AuditLogEntry, "before_delete")
def _audit_entry_delete(mapper, connection, target: AuditLogEntry) -> None:
    _block("AuditLogEntry", target.audit_id, "delete")


@event.listens_for(Job, "before_update")
def _settled_job_update(mapper, connection, target: Job) -> None:
    if _status_before_update(target) == "succeeded":
        _block("Job", target.job_id, "update")


@event.listens_for(Job, "before_delete")
def _settled_job_delete(mapper, connection, target: Job) -> None:
    if _status_before_update(target) == "succeeded":
        _block("Job", target.job_id, "delete")


@event.listens_for(EscrowDeposit, "before_update")
def _completed_deposit_update(mapper, connection, target: EscrowDeposit) -> None:
    if _status_before_update(target) == "completed":
        _block("EscrowDeposit", target.deposit_id, "update")


@event.listens_for(EscrowDeposit, "before_delete")
def _completed_deposit_delete(mapper, connection, target: EscrowDeposit) -> None:
    if _status_before_update(target) == "completed":
        _block("EscrowDeposit", target.deposit_id, "delete")
