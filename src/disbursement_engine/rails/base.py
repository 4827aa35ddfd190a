"""Base protocol and types for payment rails.

The rail's wire protocol is opaque to the engine: it hands over a
``JobInstruction`` and gets back a ``RailResult``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID


@dataclass(frozen=True)
class JobInstruction:
    """What the rail needs to move money for one job."""

    job_id: UUID
    business_id: UUID
    schedule_id: UUID
    amount: Decimal
    currency: str
    period_start: date
    period_end: date
    employee_id: UUID | None = None
    recipient_id: UUID | None = None
    idempotency_key: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "business_id": str(self.business_id),
            "schedule_id": str(self.schedule_id),
            "amount": str(self.amount),
            "currency": self.currency,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "employee_id": str(self.employee_id) if self.employee_id else None,
            "recipient_id": str(self.recipient_id) if self.recipient_id else None,
            "idempotency_key": self.idempotency_key,
        }


@dataclass(frozen=True)
class RailResult:
    """Outcome of executing one job on the rail."""

    success: bool
    reference: str | None = None
    message: str = ""


class PaymentRail(Protocol):
    """Protocol for payment rail adapters.

    ``execute`` may block on network I/O; the dispatcher bounds it with a
    timeout. Implementations should treat ``idempotency_key`` as the
    deduplication key for retries of the same job.
    """

    rail_name: str

    def execute(self, instruction: JobInstruction) -> RailResult:
        """Move the funds for one job."""
        ...
