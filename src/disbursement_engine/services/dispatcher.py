"""Dispatcher - turns due schedule occurrences into settled jobs.

One tick:
1. Recovery: release reservations and pending jobs abandoned by dead workers
2. Select active schedules whose next_run_at has passed (bounded)
3. Process each due schedule on a worker pool

Processing one schedule occurrence:
1. Plan (one transaction, under the schedule lock): re-check the schedule is
   still due, compute the pay period and per-payee amounts, create one
   pending job per payee slot, advance next_run_at, audit the run
2. Per job: reserve escrow funds (own transaction, under the business lock)
3. Execute on the payment rail with a timeout, outside any transaction
4. Settle: commit the reservation on success, release it on failure

Notification events are emitted only after the transaction they describe
has committed.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from disbursement_engine.calculators import TaxCalculator
from disbursement_engine.config import DispatcherConfig, EscrowConfig
from disbursement_engine.database import session_scope
from disbursement_engine.errors import (
    DuplicateExecutionError,
    ExternalRailFailure,
    InsufficientFundsError,
    NotFoundError,
    PeriodOverlapError,
)
from disbursement_engine.events import (
    DomainEvent,
    EventEmitter,
    EventMetadata,
    FundsInsufficient,
    JobFailed,
    JobSucceeded,
    ScheduleRunCompleted,
    ScheduleSkipped,
    UpcomingFundsInsufficient,
)
from disbursement_engine.models import Business, Job, Schedule, utcnow
from disbursement_engine.rails import JobInstruction, PaymentRail, RailResult
from disbursement_engine.scheduling import PayPeriod, next_run, pay_period
from disbursement_engine.services.audit_log import AuditLog, snapshot
from disbursement_engine.services.context import SYSTEM_ACTOR, BusinessContext
from disbursement_engine.services.escrow_ledger import EscrowLedger, ReservationToken
from disbursement_engine.services.funding_forecast import BalanceForecast, FundingForecast
from disbursement_engine.services.locking import lock_for_transaction, lock_for_update
from disbursement_engine.services.payout_calculator import PayeeAmount, PayoutCalculator
from disbursement_engine.services.state_machine import (
    JobStateMachine,
    JobStatus,
    ScheduleStatus,
)

logger = logging.getLogger(__name__)

# Job error codes
NON_POSITIVE_AMOUNT = "non_positive_amount"
INSUFFICIENT_FUNDS = "insufficient_funds"
RAIL_FAILURE = "rail_failure"
RAIL_TIMEOUT = "rail_timeout"
ABANDONED = "abandoned"

# Schedule skip reasons
NOT_DUE = "not_due"
BUSINESS_NOT_ACTIVE = "business_not_active"


@dataclass
class ScheduleRunResult:
    """Outcome of processing one schedule."""

    schedule_id: UUID
    ran: bool
    skipped_reason: str | None = None
    period: PayPeriod | None = None
    job_ids: list[UUID] = field(default_factory=list)
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    duplicates: int = 0
    overlaps: int = 0
    next_run_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": str(self.schedule_id),
            "ran": self.ran,
            "skipped_reason": self.skipped_reason,
            "period": self.period.to_dict() if self.period else None,
            "job_ids": [str(j) for j in self.job_ids],
            "jobs_succeeded": self.jobs_succeeded,
            "jobs_failed": self.jobs_failed,
            "duplicates": self.duplicates,
            "overlaps": self.overlaps,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
        }


@dataclass
class TickResult:
    """Outcome of one dispatcher tick."""

    now: datetime
    recovered_jobs: int = 0
    runs: list[ScheduleRunResult] = field(default_factory=list)
    errors: dict[UUID, str] = field(default_factory=dict)

    @property
    def schedules_run(self) -> int:
        return sum(1 for r in self.runs if r.ran)

    @property
    def jobs_succeeded(self) -> int:
        return sum(r.jobs_succeeded for r in self.runs)

    @property
    def jobs_failed(self) -> int:
        return sum(r.jobs_failed for r in self.runs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "now": self.now.isoformat(),
            "recovered_jobs": self.recovered_jobs,
            "schedules_run": self.schedules_run,
            "jobs_succeeded": self.jobs_succeeded,
            "jobs_failed": self.jobs_failed,
            "runs": [r.to_dict() for r in self.runs],
            "errors": {str(k): v for k, v in self.errors.items()},
        }


@dataclass
class _PlannedRun:
    schedule_id: UUID
    business_id: UUID
    ctx: BusinessContext
    period: PayPeriod
    job_ids: list[UUID]
    duplicates: int
    overlaps: int
    next_run_at: datetime | None


class Dispatcher:
    """Periodic executor of due schedules.

    Each schedule and each job gets its own short transactions from
    ``session_factory``; nothing is held open across a rail call.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        rail: PaymentRail,
        emitter: EventEmitter | None = None,
        config: DispatcherConfig | None = None,
        tax_calculator: TaxCalculator | None = None,
        escrow_config: EscrowConfig | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.rail = rail
        self.emitter = emitter or EventEmitter()
        self.config = config or DispatcherConfig()
        self.tax_calculator = tax_calculator or TaxCalculator()
        self.escrow_config = escrow_config or EscrowConfig()
        self._rail_pool = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="rail",
        )

    def close(self) -> None:
        self._rail_pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> Dispatcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ===== Tick =====

    def tick(self, now: datetime | None = None) -> TickResult:
        """Run recovery, then every schedule due at ``now``."""
        now = now or utcnow()
        result = TickResult(now=now)
        result.recovered_jobs = self.recover(now)

        due = self.due_schedule_ids(now)
        if not due:
            logger.debug("Tick at %s: nothing due", now.isoformat())
            return result
        logger.info("Tick at %s: %d schedule(s) due", now.isoformat(), len(due))

        with ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="dispatch",
        ) as pool:
            futures = {pool.submit(self.process_schedule, sid, now): sid for sid in due}
            for future in as_completed(futures):
                schedule_id = futures[future]
                try:
                    result.runs.append(future.result())
                except Exception as e:
                    logger.exception("Processing schedule %s failed", schedule_id)
                    result.errors[schedule_id] = str(e)
        return result

    def due_schedule_ids(self, now: datetime) -> list[UUID]:
        """Active schedules of active businesses due at or before ``now``.

        Schedules of suspended businesses stay due but are not queued, so
        they never take the place of runnable ones.
        """
        with session_scope(self.session_factory) as session:
            stmt = (
                select(Schedule.schedule_id)
                .join(Business, Business.business_id == Schedule.business_id)
                .where(
                    Business.status == "active",
                    Schedule.status == ScheduleStatus.ACTIVE.value,
                    Schedule.next_run_at.is_not(None),
                    Schedule.next_run_at <= now,
                )
                .order_by(Schedule.next_run_at, Schedule.schedule_id)
                .limit(self.config.queue_size)
            )
            return list(session.scalars(stmt))

    # ===== Funding forecast =====

    def check_upcoming_balances(self, now: datetime | None = None) -> list[BalanceForecast]:
        """Warn about businesses whose escrow cannot cover schedules due soon.

        Emits UpcomingFundsInsufficient per short business and returns every
        forecast made, short or not.
        """
        now = now or utcnow()
        window_end = now + self.config.balance_warning_window
        with session_scope(self.session_factory) as session:
            forecaster = FundingForecast(
                session,
                ledger=EscrowLedger(session, self.escrow_config),
                calculator=PayoutCalculator(
                    session,
                    tax_calculator=self.tax_calculator,
                    sdl_payroll_threshold=self.config.sdl_payroll_threshold,
                ),
            )
            forecasts = forecaster.all_businesses(window_end)

        for forecast in forecasts:
            if not forecast.is_short:
                continue
            logger.warning(
                "Escrow for business %s short by %s for %d schedule(s) due by %s",
                forecast.business_id,
                forecast.shortfall,
                len(forecast.schedule_ids),
                window_end.isoformat(),
            )
            ctx = BusinessContext.system(forecast.business_id)
            self._emit(
                UpcomingFundsInsufficient(
                    metadata=self._metadata(ctx, now),
                    window_end=window_end,
                    schedule_ids=forecast.schedule_ids,
                    required_amount=forecast.required,
                    available_amount=forecast.available,
                )
            )
        return forecasts

    # ===== Recovery =====

    def recover(self, now: datetime) -> int:
        """Fail jobs stuck in pending or processing past the stuck timeout.

        Processing jobs have their reservation released; the funds are
        available again once this commits.
        """
        cutoff = now - self.config.stuck_job_timeout
        events: list[DomainEvent] = []

        with session_scope(self.session_factory) as session:
            ledger = EscrowLedger(session, self.escrow_config)
            audit = AuditLog(session)
            released = ledger.release_stale_reservations(cutoff, now=now)

            stale_pending = session.scalars(
                lock_for_update(
                    select(Job).where(
                        Job.status == JobStatus.PENDING.value,
                        Job.updated_at < cutoff,
                    )
                ).execution_options(populate_existing=True)
            ).all()
            for job in stale_pending:
                JobStateMachine.validate_transition(job.status, JobStatus.FAILED)
                job.status = JobStatus.FAILED.value
                job.error_code = ABANDONED
                job.error_message = f"Pending since before {cutoff.isoformat()}"
                job.processed_at = now
            session.flush()

            for job in [*released, *stale_pending]:
                ctx = BusinessContext.system(job.business_id)
                audit.record(ctx, "job.failed", "Job", job.job_id, after=snapshot(job))
                events.append(self._job_failed_event(ctx, job, now))

        for event in events:
            self._emit(event)
        if events:
            logger.warning("Recovered %d abandoned job(s)", len(events))
        return len(events)

    # ===== Schedule processing =====

    def process_schedule(self, schedule_id: UUID, now: datetime | None = None) -> ScheduleRunResult:
        """Run one due occurrence of a schedule.

        Safe to call concurrently and repeatedly: the occurrence is planned
        at most once, and a job slot that already exists is never paid again.
        """
        now = now or utcnow()
        planned = self._plan(schedule_id, now)
        if isinstance(planned, ScheduleRunResult):
            return planned

        result = ScheduleRunResult(
            schedule_id=schedule_id,
            ran=True,
            period=planned.period,
            job_ids=list(planned.job_ids),
            duplicates=planned.duplicates,
            overlaps=planned.overlaps,
            next_run_at=planned.next_run_at,
        )
        for job_id in planned.job_ids:
            if self._run_job(planned.ctx, job_id, now):
                result.jobs_succeeded += 1
            else:
                result.jobs_failed += 1

        self._emit(
            ScheduleRunCompleted(
                metadata=self._metadata(planned.ctx, now),
                schedule_id=schedule_id,
                period_start=planned.period.start,
                period_end=planned.period.end,
                jobs_succeeded=result.jobs_succeeded,
                jobs_failed=result.jobs_failed,
                next_run_at=planned.next_run_at,
            )
        )
        logger.info(
            "Schedule %s period %s..%s: %d succeeded, %d failed, %d duplicate(s)",
            schedule_id,
            planned.period.start,
            planned.period.end,
            result.jobs_succeeded,
            result.jobs_failed,
            result.duplicates,
        )
        return result

    def _plan(self, schedule_id: UUID, now: datetime) -> _PlannedRun | ScheduleRunResult:
        with session_scope(self.session_factory) as session:
            lock_for_transaction(session, "schedule", schedule_id)
            schedule = session.scalars(
                lock_for_update(
                    select(Schedule).where(Schedule.schedule_id == schedule_id)
                ).execution_options(populate_existing=True)
            ).one_or_none()

            occurrence = schedule.next_run_at if schedule is not None else None
            if (
                schedule is None
                or occurrence is None
                or schedule.status != ScheduleStatus.ACTIVE.value
                or occurrence > now
            ):
                logger.debug("Schedule %s no longer due", schedule_id)
                return ScheduleRunResult(schedule_id=schedule_id, ran=False, skipped_reason=NOT_DUE)

            ctx = BusinessContext(business_id=schedule.business_id, actor=SYSTEM_ACTOR)
            business = session.get(Business, schedule.business_id)
            if business is not None and business.can_perform_actions:
                return self._plan_occurrence(session, schedule, occurrence, ctx, now)

            # Not advanced: the occurrence runs once the business is reactivated.
            logger.warning(
                "Skipping schedule %s: business %s is %s",
                schedule_id,
                schedule.business_id,
                business.status if business else "missing",
            )
            pending_run_at = schedule.next_run_at

        self._emit(
            ScheduleSkipped(
                metadata=self._metadata(ctx, now),
                schedule_id=schedule_id,
                reason=BUSINESS_NOT_ACTIVE,
            )
        )
        return ScheduleRunResult(
            schedule_id=schedule_id,
            ran=False,
            skipped_reason=BUSINESS_NOT_ACTIVE,
            next_run_at=pending_run_at,
        )

    def _plan_occurrence(
        self,
        session: Session,
        schedule: Schedule,
        occurrence: datetime,
        ctx: BusinessContext,
        now: datetime,
    ) -> _PlannedRun:
        before = snapshot(schedule)
        period = pay_period(schedule.cron_expression, occurrence)
        if schedule.kind == "payroll":
            # Serializes schedules that share employees for the overlap check.
            for employee_id in sorted(str(e.employee_id) for e in schedule.employees):
                lock_for_transaction(session, "employee", employee_id)

        calculator = PayoutCalculator(
            session,
            tax_calculator=self.tax_calculator,
            sdl_payroll_threshold=self.config.sdl_payroll_threshold,
        )
        job_ids: list[UUID] = []
        duplicates = 0
        overlaps: list[dict[str, str]] = []
        for payee in calculator.for_schedule(schedule, period):
            try:
                job = self._plan_job(session, schedule, period, payee)
            except PeriodOverlapError as e:
                logger.warning("Schedule %s: %s", schedule.schedule_id, e.message)
                overlaps.append(
                    {
                        "employee_id": str(e.employee_id),
                        "conflicting_job_id": str(e.conflicting_job_id),
                    }
                )
                continue
            except DuplicateExecutionError as e:
                duplicates += 1
                logger.info("Schedule %s: %s", schedule.schedule_id, e.message)
                continue
            job_ids.append(job.job_id)

        # Missed occurrences are not backfilled.
        schedule.next_run_at = next_run(
            schedule.cron_expression, now, business_days=schedule.business_days_only
        )
        schedule.last_run_at = now
        session.flush()

        after = snapshot(schedule) or {}
        after["period"] = period.to_dict()
        after["job_ids"] = [str(j) for j in job_ids]
        if overlaps:
            after["skipped_overlaps"] = overlaps
        AuditLog(session).record(
            ctx, "schedule.run", "Schedule", schedule.schedule_id, before=before, after=after
        )
        return _PlannedRun(
            schedule_id=schedule.schedule_id,
            business_id=schedule.business_id,
            ctx=ctx,
            period=period,
            job_ids=job_ids,
            duplicates=duplicates,
            overlaps=len(overlaps),
            next_run_at=schedule.next_run_at,
        )

    def _plan_job(
        self,
        session: Session,
        schedule: Schedule,
        period: PayPeriod,
        payee: PayeeAmount,
    ) -> Job:
        """Create the job for a payee slot, or re-arm a failed one.

        Raises DuplicateExecutionError when the slot is already taken, and
        PeriodOverlapError when the employee already has a pending, processing
        or succeeded job for an overlapping period.
        """
        existing = session.scalars(
            select(Job).where(
                Job.schedule_id == schedule.schedule_id,
                Job.period_start == period.start,
                Job.period_end == period.end,
                Job.payee_key == payee.payee_key,
            )
        ).one_or_none()

        if existing is None or self._can_retry(existing):
            self._check_overlap(session, period, payee)

        if existing is None:
            job = Job(
                schedule_id=schedule.schedule_id,
                business_id=schedule.business_id,
                period_start=period.start,
                period_end=period.end,
                amount=payee.amount,
                currency=schedule.currency,
                status=JobStatus.PENDING.value,
                employee_id=payee.employee_id,
                recipient_id=payee.recipient_id,
                payee_key=payee.payee_key,
                attempts=1,
                breakdown=payee.breakdown,
            )
            session.add(job)
            session.flush()
            return job

        if self._can_retry(existing):
            JobStateMachine.validate_transition(existing.status, JobStatus.PENDING)
            existing.status = JobStatus.PENDING.value
            existing.amount = payee.amount
            existing.breakdown = payee.breakdown
            existing.attempts += 1
            existing.error_code = None
            existing.error_message = None
            existing.reserved_at = None
            existing.processed_at = None
            session.flush()
            logger.info("Retrying job %s (attempt %d)", existing.job_id, existing.attempts)
            return existing

        raise DuplicateExecutionError(
            f"Job slot {payee.payee_key} for {period.start}..{period.end} "
            f"already {existing.status}",
            job_id=existing.job_id,
            status=existing.status,
        )

    def _can_retry(self, job: Job) -> bool:
        return job.status == JobStatus.FAILED.value and job.attempts < self.config.max_job_attempts

    @staticmethod
    def _check_overlap(session: Session, period: PayPeriod, payee: PayeeAmount) -> None:
        if payee.employee_id is None:
            return
        conflict = session.scalars(
            select(Job.job_id)
            .where(
                Job.employee_id == payee.employee_id,
                Job.status.in_(
                    [
                        JobStatus.PENDING.value,
                        JobStatus.PROCESSING.value,
                        JobStatus.SUCCEEDED.value,
                    ]
                ),
                Job.period_start <= period.end,
                Job.period_end >= period.start,
            )
            .order_by(Job.created_at)
            .limit(1)
        ).first()
        if conflict is not None:
            raise PeriodOverlapError(payee.employee_id, conflict)

    # ===== Job execution =====

    def _run_job(self, ctx: BusinessContext, job_id: UUID, now: datetime) -> bool:
        """Reserve, execute and settle one job. Returns True on success."""
        events: list[DomainEvent] = []
        token: ReservationToken | None = None

        with session_scope(self.session_factory) as session:
            ledger = EscrowLedger(session, self.escrow_config)
            job = session.get(Job, job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            if Decimal(str(job.amount)) <= 0:
                self._fail_pending(
                    session, ctx, job, NON_POSITIVE_AMOUNT, f"Computed amount {job.amount}", now
                )
                events.append(self._job_failed_event(ctx, job, now))
            else:
                try:
                    token = ledger.reserve(job.business_id, job_id, now=now)
                except InsufficientFundsError as e:
                    job = session.get(Job, job_id)
                    if job is None:
                        raise NotFoundError("Job", job_id) from e
                    self._fail_pending(session, ctx, job, INSUFFICIENT_FUNDS, e.message, now)
                    events.append(
                        FundsInsufficient(
                            metadata=self._metadata(ctx, now),
                            schedule_id=job.schedule_id,
                            job_id=job.job_id,
                            required_amount=e.required,
                            available_amount=e.available,
                        )
                    )
                    events.append(self._job_failed_event(ctx, job, now))
            instruction = self._instruction(job) if token is not None else None

        if token is None or instruction is None:
            for event in events:
                self._emit(event)
            return False

        outcome: RailResult | ExternalRailFailure
        try:
            outcome = self.execute_on_rail(instruction)
        except ExternalRailFailure as e:
            outcome = e
        return self._settle(ctx, token, outcome, now)

    def _fail_pending(
        self,
        session: Session,
        ctx: BusinessContext,
        job: Job,
        error_code: str,
        error_message: str,
        now: datetime,
    ) -> None:
        JobStateMachine.validate_transition(job.status, JobStatus.FAILED)
        job.status = JobStatus.FAILED.value
        job.error_code = error_code
        job.error_message = error_message
        job.processed_at = now
        session.flush()
        AuditLog(session).record(ctx, "job.failed", "Job", job.job_id, after=snapshot(job))
        logger.warning("Job %s failed: %s", job.job_id, error_code)

    def execute_on_rail(self, instruction: JobInstruction) -> RailResult:
        """Execute on the rail, bounded by the configured timeout.

        Raises ExternalRailFailure on rejection, error or timeout. A rail call
        that times out keeps running in its pool thread; its late answer is
        ignored.
        """
        future = self._rail_pool.submit(self.rail.execute, instruction)
        try:
            result = future.result(timeout=self.config.rail_timeout_seconds)
        except FuturesTimeoutError:
            future.cancel()
            raise ExternalRailFailure(
                f"{self.rail.rail_name} rail did not answer within "
                f"{self.config.rail_timeout_seconds}s",
                timed_out=True,
            ) from None
        except Exception as e:
            raise ExternalRailFailure(f"{self.rail.rail_name} rail error: {e}") from e

        if not result.success:
            raise ExternalRailFailure(result.message or f"{self.rail.rail_name} rail rejected the job")
        return result

    def _settle(
        self,
        ctx: BusinessContext,
        token: ReservationToken,
        outcome: RailResult | ExternalRailFailure,
        now: datetime,
    ) -> bool:
        with session_scope(self.session_factory) as session:
            ledger = EscrowLedger(session, self.escrow_config)
            audit = AuditLog(session)
            if isinstance(outcome, RailResult):
                job = ledger.commit(token, rail_reference=outcome.reference, now=now)
                audit.record(ctx, "job.succeeded", "Job", job.job_id, after=snapshot(job))
                event: DomainEvent = JobSucceeded(
                    metadata=self._metadata(ctx, now),
                    schedule_id=job.schedule_id,
                    job_id=job.job_id,
                    amount=token.amount,
                    rail_reference=job.rail_reference,
                )
                logger.info("Job %s succeeded (%s)", job.job_id, job.rail_reference)
            else:
                code = RAIL_TIMEOUT if outcome.timed_out else RAIL_FAILURE
                job = ledger.release(token, error_code=code, error_message=outcome.reason, now=now)
                audit.record(ctx, "job.failed", "Job", job.job_id, after=snapshot(job))
                event = self._job_failed_event(ctx, job, now)
                logger.warning("Job %s failed on rail: %s", job.job_id, outcome.reason)

        self._emit(event)
        return isinstance(outcome, RailResult)

    # ===== Helpers =====

    @staticmethod
    def _instruction(job: Job) -> JobInstruction:
        return JobInstruction(
            job_id=job.job_id,
            business_id=job.business_id,
            schedule_id=job.schedule_id,
            amount=Decimal(str(job.amount)),
            currency=job.currency,
            period_start=job.period_start,
            period_end=job.period_end,
            employee_id=job.employee_id,
            recipient_id=job.recipient_id,
            idempotency_key=f"{job.job_id}:{job.attempts}",
        )

    @staticmethod
    def _metadata(ctx: BusinessContext, now: datetime) -> EventMetadata:
        return EventMetadata.create(
            business_id=ctx.business_id,
            correlation_id=ctx.correlation_id,
            actor=ctx.actor,
            timestamp=now,
        )

    def _job_failed_event(self, ctx: BusinessContext, job: Job, now: datetime) -> JobFailed:
        return JobFailed(
            metadata=self._metadata(ctx, now),
            schedule_id=job.schedule_id,
            job_id=job.job_id,
            amount=Decimal(str(job.amount)),
            error_code=job.error_code or RAIL_FAILURE,
            error_message=job.error_message,
        )

    def _emit(self, event: DomainEvent) -> None:
        errors = self.emitter.emit(event)
        if errors:
            logger.warning("%d handler(s) failed for %s", len(errors), event.event_type)
