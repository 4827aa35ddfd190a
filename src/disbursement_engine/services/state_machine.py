"""Status state machines with transition validation."""

from __future__ import annotations

from enum import Enum

from disbursement_engine.errors import InvalidTransitionError


class ScheduleStatus(str, Enum):
    """Schedule status values."""

    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    """Job status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DepositStatus(str, Enum):
    """Escrow deposit status values."""

    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class _StateMachine:
    """Shared transition checks; subclasses define VALID_TRANSITIONS."""

    VALID_TRANSITIONS: dict[str, list[str]] = {}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(
        cls, from_status: str, to_status: str, reason: str | None = None
    ) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status, reason)

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)


class ScheduleStateMachine(_StateMachine):
    """Schedule transitions.

    Allowed transitions:
    - active → paused, cancelled
    - paused → active (resume), cancelled
    - cancelled is terminal
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        ScheduleStatus.ACTIVE: [ScheduleStatus.PAUSED, ScheduleStatus.CANCELLED],
        ScheduleStatus.PAUSED: [ScheduleStatus.ACTIVE, ScheduleStatus.CANCELLED],
        ScheduleStatus.CANCELLED: [],  # Terminal state
    }

    # Only these statuses are ever selected by the dispatcher
    DISPATCHABLE = {ScheduleStatus.ACTIVE}

    # Statuses in which the definition may still be edited
    EDITABLE = {ScheduleStatus.ACTIVE, ScheduleStatus.PAUSED}

    @classmethod
    def can_edit(cls, status: str) -> bool:
        return status in cls.EDITABLE


class JobStateMachine(_StateMachine):
    """Job transitions.

    Allowed transitions:
    - pending → processing (funds reserved)
    - pending → failed (funding or amount failure, recovery)
    - processing → succeeded (commit) or failed (release)
    - failed → pending (schedule-driven retry of the same slot)
    - succeeded is terminal and immutable
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        JobStatus.PENDING: [JobStatus.PROCESSING, JobStatus.FAILED],
        JobStatus.PROCESSING: [JobStatus.SUCCEEDED, JobStatus.FAILED],
        JobStatus.FAILED: [JobStatus.PENDING],
        JobStatus.SUCCEEDED: [],  # Terminal state
    }

    # Jobs whose amount counts against the escrow balance
    CONSUMING = {JobStatus.PROCESSING, JobStatus.SUCCEEDED}


class DepositStateMachine(_StateMachine):
    """Deposit transitions: pending → completed or rejected, both terminal."""

    VALID_TRANSITIONS: dict[str, list[str]] = {
        DepositStatus.PENDING: [DepositStatus.COMPLETED, DepositStatus.REJECTED],
        DepositStatus.COMPLETED: [],
        DepositStatus.REJECTED: [],
    }
