"""Notification events emitted by the dispatcher.

Events are immutable, typed, and serializable. They are fire-and-forget:
consumers (email, messaging, dashboards) subscribe through the
``EventEmitter`` and a failing consumer never affects disbursement state.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from disbursement_engine.serialization import json_safe


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    FUNDING = "funding"
    SCHEDULE = "schedule"
    JOB = "job"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every event."""

    event_id: UUID
    timestamp: datetime
    business_id: UUID
    correlation_id: UUID  # Links events of one schedule run
    actor: str
    version: int = 1

    @classmethod
    def create(
        cls,
        business_id: UUID,
        correlation_id: UUID | None = None,
        actor: str = "system:dispatcher",
        timestamp: datetime | None = None,
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=timestamp or datetime.now().astimezone(),
            business_id=business_id,
            correlation_id=correlation_id or uuid4(),
            actor=actor,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = json_safe(asdict(self))
        data["event_type"] = self.event_type
        data["category"] = self.category.value
        return data

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


# =============================================================================
# Funding Events
# =============================================================================


@dataclass(frozen=True)
class FundsInsufficient(DomainEvent):
    """A job could not be reserved against the escrow balance."""

    schedule_id: UUID
    job_id: UUID
    required_amount: Decimal
    available_amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.FUNDING

    @property
    def shortfall(self) -> Decimal:
        return self.required_amount - self.available_amount


@dataclass(frozen=True)
class UpcomingFundsInsufficient(DomainEvent):
    """Escrow will not cover the schedules due before ``window_end``."""

    window_end: datetime
    schedule_ids: tuple[UUID, ...]
    required_amount: Decimal
    available_amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.FUNDING

    @property
    def shortfall(self) -> Decimal:
        return self.required_amount - self.available_amount


# =============================================================================
# Job Events
# =============================================================================


@dataclass(frozen=True)
class JobSucceeded(DomainEvent):
    """A job was executed on the rail and its funds consumed."""

    schedule_id: UUID
    job_id: UUID
    amount: Decimal
    rail_reference: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.JOB


@dataclass(frozen=True)
class JobFailed(DomainEvent):
    """A job failed; any reserved funds were released."""

    schedule_id: UUID
    job_id: UUID
    amount: Decimal
    error_code: str
    error_message: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.JOB


# =============================================================================
# Schedule Events
# =============================================================================


@dataclass(frozen=True)
class ScheduleRunCompleted(DomainEvent):
    """All jobs of one schedule occurrence were settled."""

    schedule_id: UUID
    period_start: date
    period_end: date
    jobs_succeeded: int
    jobs_failed: int
    next_run_at: datetime | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.SCHEDULE

    @property
    def has_failures(self) -> bool:
        return self.jobs_failed > 0


@dataclass(frozen=True)
class ScheduleSkipped(DomainEvent):
    """A due schedule was not run, e.g. because its business is suspended."""

    schedule_id: UUID
    reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.SCHEDULE
