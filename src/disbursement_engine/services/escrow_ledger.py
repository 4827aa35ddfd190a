"""Escrow ledger - per-business spendable balance and job reservations.

    available = sum(authorized_amount of completed deposits)
              - sum(amount of jobs in {processing, succeeded})

A job in ``processing`` holds a reservation: its amount is already excluded
from the balance, so concurrent reservations can never spend the same funds.
``commit`` makes the spend permanent; ``release`` fails the job and the funds
are available again at once.

``reserve`` serializes per business: it takes the business's transaction
lock and row lock, then checks and marks the job inside the same
transaction. The caller commits right after.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from disbursement_engine.config import EscrowConfig
from disbursement_engine.errors import (
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from disbursement_engine.models import Business, EscrowDeposit, Job, utcnow
from disbursement_engine.services.audit_log import AuditLog, snapshot
from disbursement_engine.services.context import BusinessContext, get_owned
from disbursement_engine.services.locking import lock_for_transaction, lock_for_update
from disbursement_engine.services.state_machine import (
    DepositStateMachine,
    DepositStatus,
    JobStateMachine,
    JobStatus,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def _to_money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ReservationToken:
    """Proof that a job's amount is reserved against the escrow balance."""

    job_id: UUID
    business_id: UUID
    amount: Decimal
    reserved_at: datetime


@dataclass(frozen=True)
class BalanceBreakdown:
    """Balance components for dashboards."""

    business_id: UUID
    deposited: Decimal
    reserved: Decimal
    consumed: Decimal
    pending_deposits: Decimal

    @property
    def available(self) -> Decimal:
        return self.deposited - self.reserved - self.consumed

    def to_dict(self) -> dict[str, str]:
        return {
            "business_id": str(self.business_id),
            "deposited": str(self.deposited),
            "reserved": str(self.reserved),
            "consumed": str(self.consumed),
            "pending_deposits": str(self.pending_deposits),
            "available": str(self.available),
        }


class EscrowLedger:
    """Deposits, balance and reservations for escrow-funded disbursements."""

    def __init__(self, session: Session, config: EscrowConfig | None = None) -> None:
        self.session = session
        self.config = config or EscrowConfig()
        self.audit = AuditLog(session)

    # ===== Fees =====

    def split_fee(self, amount: Decimal) -> tuple[Decimal, Decimal]:
        """Return (fee_amount, authorized_amount) for a deposit."""
        fee = (amount * self.config.deposit_fee_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
        return fee, amount - fee

    # ===== Balance =====

    def _deposit_total(self, business_id: UUID, status: str) -> Decimal:
        column = (
            EscrowDeposit.authorized_amount
            if status == DepositStatus.COMPLETED
            else EscrowDeposit.amount
        )
        total = self.session.scalar(
            select(func.coalesce(func.sum(column), 0)).where(
                EscrowDeposit.business_id == business_id,
                EscrowDeposit.status == status,
            )
        )
        return _to_money(total)

    def _job_total(self, business_id: UUID, status: str) -> Decimal:
        total = self.session.scalar(
            select(func.coalesce(func.sum(Job.amount), 0)).where(
                Job.business_id == business_id,
                Job.status == status,
            )
        )
        return _to_money(total)

    def available_balance(self, business_id: UUID) -> Decimal:
        """Spendable escrow funds for a business."""
        return self.balance_breakdown(business_id).available

    def balance_breakdown(self, business_id: UUID) -> BalanceBreakdown:
        return BalanceBreakdown(
            business_id=business_id,
            deposited=self._deposit_total(business_id, DepositStatus.COMPLETED.value),
            reserved=self._job_total(business_id, JobStatus.PROCESSING.value),
            consumed=self._job_total(business_id, JobStatus.SUCCEEDED.value),
            pending_deposits=self._deposit_total(business_id, DepositStatus.PENDING.value),
        )

    # ===== Deposits =====

    def create_deposit(
        self,
        ctx: BusinessContext,
        amount: Decimal | str | int,
        currency: str | None = None,
        bank_reference: str | None = None,
    ) -> EscrowDeposit:
        """Record a deposit request; it counts toward the balance once completed."""
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("Deposit amount must be a number", field="amount") from None
        if not value.is_finite() or value <= 0:
            raise ValidationError("Deposit amount must be positive", field="amount")
        value = value.quantize(CENTS, rounding=ROUND_HALF_UP)
        if value <= 0:
            raise ValidationError("Deposit amount must be positive", field="amount")

        currency = (currency or self.config.default_currency).upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("Currency must be a 3-letter code", field="currency")

        if self.session.get(Business, ctx.business_id) is None:
            raise NotFoundError("Business", ctx.business_id)

        fee, authorized = self.split_fee(value)
        deposit = EscrowDeposit(
            business_id=ctx.business_id,
            amount=value,
            fee_amount=fee,
            authorized_amount=authorized,
            currency=currency,
            status=DepositStatus.PENDING.value,
            bank_reference=bank_reference,
        )
        self.session.add(deposit)
        self.session.flush()

        self.audit.record(
            ctx,
            "escrow.deposit_created",
            "EscrowDeposit",
            deposit.deposit_id,
            after=snapshot(deposit),
        )
        logger.info(
            "Escrow deposit %s created: amount=%s fee=%s authorized=%s business=%s",
            deposit.deposit_id,
            value,
            fee,
            authorized,
            ctx.business_id,
        )
        return deposit

    def confirm_deposit(
        self,
        ctx: BusinessContext,
        deposit_id: UUID,
        bank_reference: str | None = None,
        now: datetime | None = None,
    ) -> EscrowDeposit:
        """Mark a deposit completed after the bank confirms receipt."""
        deposit = get_owned(self.session, EscrowDeposit, deposit_id, ctx)
        DepositStateMachine.validate_transition(deposit.status, DepositStatus.COMPLETED)

        before = snapshot(deposit)
        deposit.status = DepositStatus.COMPLETED.value
        deposit.completed_at = now or utcnow()
        if bank_reference:
            deposit.bank_reference = bank_reference
        self.session.flush()

        self.audit.record(
            ctx,
            "escrow.deposit_confirmed",
            "EscrowDeposit",
            deposit.deposit_id,
            before=before,
            after=snapshot(deposit),
        )
        logger.info("Escrow deposit %s confirmed", deposit.deposit_id)
        return deposit

    def reject_deposit(
        self,
        ctx: BusinessContext,
        deposit_id: UUID,
        reason: str,
    ) -> EscrowDeposit:
        """Mark a pending deposit rejected; it never contributes to the balance."""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", field="reason")
        deposit = get_owned(self.session, EscrowDeposit, deposit_id, ctx)
        DepositStateMachine.validate_transition(deposit.status, DepositStatus.REJECTED)

        before = snapshot(deposit)
        deposit.status = DepositStatus.REJECTED.value
        deposit.rejection_reason = reason.strip()
        self.session.flush()

        self.audit.record(
            ctx,
            "escrow.deposit_rejected",
            "EscrowDeposit",
            deposit.deposit_id,
            before=before,
            after=snapshot(deposit),
        )
        logger.warning("Escrow deposit %s rejected: %s", deposit.deposit_id, reason)
        return deposit

    # ===== Reservations =====

    def _load_job(self, job_id: UUID) -> Job:
        job = self.session.scalars(
            lock_for_update(select(Job).where(Job.job_id == job_id)).execution_options(
                populate_existing=True
            )
        ).one_or_none()
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    def reserve(
        self,
        business_id: UUID,
        job_id: UUID,
        now: datetime | None = None,
    ) -> ReservationToken:
        """Reserve a pending job's amount against the business's balance.

        Raises InsufficientFundsError, leaving the job and the balance
        unchanged, when the available balance cannot cover the job.
        """
        lock_for_transaction(self.session, "business", business_id)
        self.session.execute(
            lock_for_update(select(Business.business_id).where(Business.business_id == business_id))
        )

        job = self._load_job(job_id)
        if job.business_id != business_id:
            raise NotFoundError("Job", job_id)
        JobStateMachine.validate_transition(job.status, JobStatus.PROCESSING)

        amount = _to_money(job.amount)
        if amount <= 0:
            raise ValidationError("Only positive amounts can be reserved", field="amount")
        available = self.available_balance(business_id)
        if available < amount:
            logger.warning(
                "Insufficient escrow for job %s: required=%s available=%s",
                job_id,
                amount,
                available,
            )
            raise InsufficientFundsError(business_id, amount, available)

        reserved_at = now or utcnow()
        job.status = JobStatus.PROCESSING.value
        job.reserved_at = reserved_at
        self.session.flush()
        logger.debug("Reserved %s for job %s", amount, job_id)
        return ReservationToken(
            job_id=job.job_id,
            business_id=business_id,
            amount=amount,
            reserved_at=reserved_at,
        )

    def commit(
        self,
        token: ReservationToken,
        rail_reference: str | None = None,
        now: datetime | None = None,
    ) -> Job:
        """Consume the reserved funds; the job becomes succeeded."""
        job = self._load_job(token.job_id)
        JobStateMachine.validate_transition(job.status, JobStatus.SUCCEEDED)
        job.status = JobStatus.SUCCEEDED.value
        job.processed_at = now or utcnow()
        job.rail_reference = rail_reference
        job.error_code = None
        job.error_message = None
        self.session.flush()
        return job

    def release(
        self,
        token: ReservationToken,
        error_code: str,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> Job:
        """Return the reserved funds; the job becomes failed."""
        job = self._load_job(token.job_id)
        JobStateMachine.validate_transition(job.status, JobStatus.FAILED)
        job.status = JobStatus.FAILED.value
        job.processed_at = now or utcnow()
        job.error_code = error_code
        job.error_message = error_message
        self.session.flush()
        return job

    def release_stale_reservations(
        self,
        older_than: datetime,
        now: datetime | None = None,
    ) -> list[Job]:
        """Release processing jobs reserved before ``older_than``.

        Covers workers that died between reserving and settling a job.
        """
        stale = self.session.scalars(
            lock_for_update(
                select(Job).where(
                    Job.status == JobStatus.PROCESSING.value,
                    Job.reserved_at < older_than,
                )
            ).execution_options(populate_existing=True)
        ).all()
        released = []
        for job in stale:
            token = ReservationToken(
                job_id=job.job_id,
                business_id=job.business_id,
                amount=_to_money(job.amount),
                reserved_at=job.reserved_at or older_than,
            )
            released.append(
                self.release(
                    token,
                    error_code="reservation_expired",
                    error_message=f"Reservation older than {older_than.isoformat()} released",
                    now=now,
                )
            )
            logger.warning("Released stale reservation for job %s", job.job_id)
        return released
