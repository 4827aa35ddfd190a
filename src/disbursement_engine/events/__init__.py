"""Notification events and their emitter."""

from disbursement_engine.events.emitter import EventEmitter, EventHandler
from disbursement_engine.events.types import (
    DomainEvent,
    EventCategory,
    EventMetadata,
    FundsInsufficient,
    JobFailed,
    JobSucceeded,
    ScheduleRunCompleted,
    ScheduleSkipped,
    UpcomingFundsInsufficient,
)

__all__ = [
    "EventEmitter",
    "EventHandler",
    "DomainEvent",
    "EventCategory",
    "EventMetadata",
    "FundsInsufficient",
    "JobFailed",
    "JobSucceeded",
    "ScheduleRunCompleted",
    "ScheduleSkipped",
    "UpcomingFundsInsufficient",
]
