"""Typed errors raised by the disbursement engine.

Every public operation signals failure through one of these classes rather
than a generic exception. Each carries a machine-readable ``code`` that the
API layer returns alongside the message.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID


class DisbursementError(Exception):
    """Base class for all engine errors."""

    code: str = "DISBURSEMENT_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "detail": self.message,
            "code": self.code,
            **{k: str(v) if isinstance(v, (Decimal, UUID)) else v for k, v in self.details.items()},
        }


# ===== Validation =====


class ValidationError(DisbursementError):
    """Malformed input, rejected before any mutation."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, **details: Any) -> None:
        self.field = field
        if field is not None:
            details["field"] = field
        super().__init__(message, **details)


class BusinessNotActiveError(ValidationError):
    """The business may not perform writes in its current status."""

    code = "BUSINESS_NOT_ACTIVE"

    def __init__(self, business_id: UUID, status: str) -> None:
        self.business_id = business_id
        self.status = status
        super().__init__(
            f"Business {business_id} is {status} and cannot perform actions",
            business_id=business_id,
            status=status,
        )


class NotFoundError(ValidationError):
    """A referenced row does not exist within the caller's business."""

    code = "NOT_FOUND"

    def __init__(self, subject_type: str, subject_id: UUID) -> None:
        self.subject_type = subject_type
        self.subject_id = subject_id
        super().__init__(
            f"{subject_type} {subject_id} not found",
            subject_type=subject_type,
            subject_id=subject_id,
        )


class InvalidTransitionError(ValidationError):
    """Raised when an invalid state transition is attempted."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, from_status=from_status, to_status=to_status)


# ===== Configuration =====


class ConfigurationError(DisbursementError):
    """Invalid recurrence descriptor, frequency, or engine configuration."""

    code = "CONFIGURATION_ERROR"


# ===== Funding & execution =====


class InsufficientFundsError(DisbursementError):
    """The escrow balance cannot cover a reservation."""

    code = "INSUFFICIENT_FUNDS"

    def __init__(self, business_id: UUID, required: Decimal, available: Decimal) -> None:
        self.business_id = business_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient escrow funds: required {required}, available {available}",
            business_id=business_id,
            required=required,
            available=available,
        )

    @property
    def shortfall(self) -> Decimal:
        return max(Decimal("0"), self.required - self.available)


class DuplicateExecutionError(DisbursementError):
    """A write would repeat an existing unique row; callers treat it as a no-op."""

    code = "DUPLICATE_EXECUTION"


class PeriodOverlapError(DuplicateExecutionError):
    """An employee already has a live job for an overlapping pay period."""

    code = "PERIOD_OVERLAP"

    def __init__(self, employee_id: UUID, conflicting_job_id: UUID) -> None:
        self.employee_id = employee_id
        self.conflicting_job_id = conflicting_job_id
        super().__init__(
            f"Employee {employee_id} is already paid for an overlapping period "
            f"by job {conflicting_job_id}",
            employee_id=employee_id,
            conflicting_job_id=conflicting_job_id,
        )


class ExternalRailFailure(DisbursementError):
    """The payment rail reported failure or did not answer in time."""

    code = "EXTERNAL_RAIL_FAILURE"

    def __init__(self, reason: str, timed_out: bool = False) -> None:
        self.reason = reason
        self.timed_out = timed_out
        super().__init__(reason, timed_out=timed_out)


class ImmutableRecordError(DisbursementError):
    """Attempted modification of an append-only or settled record."""

    code = "IMMUTABLE_RECORD"

    def __init__(self, subject_type: str, subject_id: Any, operation: str) -> None:
        self.subject_type = subject_type
        self.subject_id = subject_id
        self.operation = operation
        super().__init__(
            f"Cannot {operation} {subject_type} {subject_id}: record is immutable",
            subject_type=subject_type,
            subject_id=str(subject_id),
            operation=operation,
        )


class LockTimeoutError(DisbursementError):
    """A transaction-scoped lock could not be acquired in time."""

    code = "LOCK_TIMEOUT"

    def __init__(self, key: str, timeout: float) -> None:
        self.key = key
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for lock {key}", key=key)
