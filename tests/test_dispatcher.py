"""Tests for the dispatcher: planning, funding, rail execution and recovery."""

from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from disbursement_engine.config import DispatcherConfig
from disbursement_engine.events import (
    FundsInsufficient,
    JobFailed,
    JobSucceeded,
    ScheduleRunCompleted,
    ScheduleSkipped,
    UpcomingFundsInsufficient,
)
from disbursement_engine.models import Business, Job, Recipient, Schedule
from disbursement_engine.rails import RailResult, StubRail
from disbursement_engine.services.adjustment_service import AdjustmentService
from disbursement_engine.services.audit_log import AuditLog
from disbursement_engine.services.context import BusinessContext
from disbursement_engine.services.dispatcher import (
    BUSINESS_NOT_ACTIVE,
    NOT_DUE,
    Dispatcher,
)
from disbursement_engine.services.escrow_ledger import EscrowLedger
from disbursement_engine.services.schedule_service import ScheduleService

NOW = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)
RUN_AT = datetime(2025, 3, 25, 9, 0, tzinfo=timezone.utc)
TICK = RUN_AT
NEXT_RUN = datetime(2025, 4, 25, 9, 0, tzinfo=timezone.utc)


def _generic_schedule(session, ctx, recipients, amount="1000.00", frequency="monthly") -> Schedule:
    schedule = ScheduleService(session).create_schedule(
        ctx,
        name="Office rent",
        kind="generic",
        run_at=RUN_AT,
        frequency=frequency,
        amount=amount,
        recipient_ids=[r.recipient_id for r in recipients],
        now=NOW,
    )
    session.commit()
    return schedule


def _payroll_schedule(session, ctx, employees, run_at=RUN_AT) -> Schedule:
    schedule = ScheduleService(session).create_schedule(
        ctx,
        name="Monthly payroll",
        kind="payroll",
        run_at=run_at,
        frequency="monthly",
        employee_ids=[e.employee_id for e in employees],
        now=NOW,
    )
    session.commit()
    return schedule


def _jobs(session, schedule_id) -> list[Job]:
    session.expire_all()
    return list(session.scalars(select(Job).where(Job.schedule_id == schedule_id)))


def _employee_jobs(session, employee_id) -> list[Job]:
    session.expire_all()
    return list(
        session.scalars(select(Job).where(Job.employee_id == employee_id).order_by(Job.created_at))
    )


def _reload(session, schedule: Schedule) -> Schedule:
    session.expire_all()
    return session.get(Schedule, schedule.schedule_id)


def _event_types(emitted) -> list[str]:
    return [e.event_type for e in emitted]


class TestTick:
    """Selecting and running due schedules."""

    def test_due_schedule_runs(self, session, ctx, fund, make_recipient, dispatcher, rail, emitted):
        """A funded schedule pays every recipient and advances."""
        fund("10000")
        landlord = make_recipient("Acme Landlords")
        cleaner = make_recipient("Sparkle Cleaning")
        schedule = _generic_schedule(session, ctx, [landlord, cleaner])

        result = dispatcher.tick(TICK)

        assert result.schedules_run == 1
        assert result.jobs_succeeded == 2
        assert result.errors == {}
        jobs = _jobs(session, schedule.schedule_id)
        assert {j.status for j in jobs} == {"succeeded"}
        assert {(j.period_start, j.period_end) for j in jobs} == {
            (date(2025, 3, 1), date(2025, 3, 31))
        }
        assert rail.execution_count == 2

        schedule = _reload(session, schedule)
        assert schedule.next_run_at == NEXT_RUN
        assert schedule.last_run_at == TICK

        breakdown = EscrowLedger(session).balance_breakdown(ctx.business_id)
        assert breakdown.consumed == Decimal("2000.00")
        assert breakdown.available == Decimal("7850.00")
        assert _event_types(emitted).count("JobSucceeded") == 2
        assert _event_types(emitted)[-1] == "ScheduleRunCompleted"

    def test_not_due_yet(self, session, ctx, fund, make_recipient, dispatcher):
        """Schedules whose next run is in the future are left alone."""
        fund("10000")
        _generic_schedule(session, ctx, [make_recipient()])

        result = dispatcher.tick(TICK - timedelta(minutes=1))

        assert result.runs == []

    def test_paused_schedule_not_selected(self, session, ctx, fund, make_recipient, dispatcher):
        """Paused schedules are never dispatched."""
        fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])
        ScheduleService(session).pause_schedule(ctx, schedule.schedule_id)
        session.commit()

        result = dispatcher.tick(TICK)

        assert result.runs == []
        assert _jobs(session, schedule.schedule_id) == []

    def test_one_time_schedule_runs_once(self, session, ctx, fund, make_recipient, dispatcher):
        """A one-time schedule has no next run after it fires."""
        fund("10000")
        recipient = make_recipient()
        schedule = ScheduleService(session).create_schedule(
            ctx,
            name="Deposit refund",
            kind="generic",
            run_at=RUN_AT,
            amount="2500",
            recipient_ids=[recipient.recipient_id],
            now=NOW,
        )
        session.commit()

        first = dispatcher.tick(TICK)
        second = dispatcher.tick(TICK + timedelta(days=40))

        assert first.jobs_succeeded == 1
        assert second.runs == []
        assert _reload(session, schedule).next_run_at is None

    def test_missed_occurrences_not_backfilled(self, session, ctx, fund, make_recipient, dispatcher):
        """A late tick runs the missed occurrence once and jumps past now."""
        fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])
        late = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

        result = dispatcher.tick(late)

        assert result.jobs_succeeded == 1
        assert len(_jobs(session, schedule.schedule_id)) == 1
        assert _reload(session, schedule).next_run_at == datetime(2025, 6, 25, 9, 0, tzinfo=timezone.utc)

    def test_run_is_audited(self, session, ctx, fund, make_recipient, dispatcher):
        """The run and each job outcome are recorded by the system actor."""
        fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])

        dispatcher.tick(TICK)

        session.expire_all()
        audit = AuditLog(session)
        run = audit.entries_for(ctx.business_id, action="schedule.run")
        succeeded = audit.entries_for(ctx.business_id, action="job.succeeded")
        job = _jobs(session, schedule.schedule_id)[0]
        assert len(run) == 1
        assert run[0].actor == "system:dispatcher"
        assert run[0].after["period"] == {"start": "2025-03-01", "end": "2025-03-31"}
        assert run[0].after["job_ids"] == [str(job.job_id)]
        assert [e.subject_id for e in succeeded] == [job.job_id]


class TestIdempotency:
    """An occurrence is planned once and a job slot is paid once."""

    def test_second_call_is_not_due(self, session, ctx, fund, make_recipient, dispatcher, rail):
        """Processing the same schedule twice at the same instant runs once."""
        fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])

        first = dispatcher.process_schedule(schedule.schedule_id, TICK)
        second = dispatcher.process_schedule(schedule.schedule_id, TICK)

        assert first.ran
        assert not second.ran
        assert second.skipped_reason == NOT_DUE
        assert len(_jobs(session, schedule.schedule_id)) == 1
        assert rail.execution_count == 1

    def test_replayed_occurrence_creates_no_job(self, session, ctx, fund, make_recipient, dispatcher, rail):
        """Re-running an already paid occurrence counts duplicates only."""
        fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])
        dispatcher.process_schedule(schedule.schedule_id, TICK)

        schedule = _reload(session, schedule)
        schedule.next_run_at = RUN_AT
        session.commit()
        replay = dispatcher.process_schedule(schedule.schedule_id, TICK)

        assert replay.ran
        assert replay.duplicates == 1
        assert replay.job_ids == []
        assert len(_jobs(session, schedule.schedule_id)) == 1
        assert rail.execution_count == 1

    def test_concurrent_processing_runs_once(self, session, ctx, fund, make_recipient, dispatcher, rail):
        """Two workers racing on one schedule produce one set of jobs."""
        fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient(), make_recipient("Second")])

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(
                pool.map(lambda _: dispatcher.process_schedule(schedule.schedule_id, TICK), range(2))
            )

        assert sorted(r.ran for r in results) == [False, True]
        assert len(_jobs(session, schedule.schedule_id)) == 2
        assert rail.execution_count == 2


class TestFailures:
    """Funding and rail failures."""

    def test_insufficient_funds(self, session, ctx, make_recipient, dispatcher, rail, emitted):
        """An unfunded job fails, the rail is never called, and the schedule advances."""
        schedule = _generic_schedule(session, ctx, [make_recipient()])

        result = dispatcher.tick(TICK)

        job = _jobs(session, schedule.schedule_id)[0]
        assert result.jobs_failed == 1
        assert job.status == "failed"
        assert job.error_code == "insufficient_funds"
        assert rail.execution_count == 0
        assert _reload(session, schedule).next_run_at == NEXT_RUN

        shortfalls = [e for e in emitted if isinstance(e, FundsInsufficient)]
        assert len(shortfalls) == 1
        assert shortfalls[0].required_amount == Decimal("1000.00")
        assert shortfalls[0].shortfall == Decimal("1000.00")
        assert any(isinstance(e, JobFailed) for e in emitted)

    def test_partial_funding(self, session, ctx, fund, make_recipient, dispatcher):
        """Jobs are funded one by one until the balance runs out."""
        fund("2100")  # 2068.50 authorized
        schedule = _generic_schedule(
            session, ctx, [make_recipient("A"), make_recipient("B"), make_recipient("C")]
        )

        result = dispatcher.tick(TICK)

        statuses = sorted(j.status for j in _jobs(session, schedule.schedule_id))
        assert result.jobs_succeeded == 2
        assert statuses == ["failed", "succeeded", "succeeded"]
        assert EscrowLedger(session).available_balance(ctx.business_id) == Decimal("68.50")

    def test_rail_failure_releases_funds(
        self, session, ctx, fund, make_recipient, session_factory, emitter, emitted, dispatcher_config
    ):
        """A rejected job releases its reservation; next_run still advances."""
        authorized = fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])
        rail = StubRail(decide=lambda instruction: RailResult(success=False, message="Account closed"))

        with Dispatcher(session_factory, rail, emitter=emitter, config=dispatcher_config) as dispatcher:
            result = dispatcher.tick(TICK)

        job = _jobs(session, schedule.schedule_id)[0]
        assert result.jobs_failed == 1
        assert job.status == "failed"
        assert job.error_code == "rail_failure"
        assert job.error_message == "Account closed"
        assert EscrowLedger(session).available_balance(ctx.business_id) == authorized
        assert _reload(session, schedule).next_run_at == NEXT_RUN
        completed = [e for e in emitted if isinstance(e, ScheduleRunCompleted)]
        assert completed[0].has_failures

    def test_rail_exception_is_a_failure(self, session, ctx, fund, make_recipient, session_factory, emitter):
        """Exceptions raised by the rail are treated like rejections."""
        fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])

        def explode(instruction):
            raise ConnectionError("bank unreachable")

        with Dispatcher(session_factory, StubRail(decide=explode), emitter=emitter) as dispatcher:
            dispatcher.tick(TICK)

        job = _jobs(session, schedule.schedule_id)[0]
        assert job.status == "failed"
        assert job.error_code == "rail_failure"
        assert "bank unreachable" in job.error_message

    def test_rail_timeout(self, session, ctx, fund, make_recipient, session_factory, emitter):
        """A rail that does not answer in time fails the job and frees the funds."""
        authorized = fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])
        config = DispatcherConfig(max_workers=2, rail_timeout_seconds=0.1)

        with Dispatcher(session_factory, StubRail(delay_seconds=1.0), emitter=emitter, config=config) as dispatcher:
            dispatcher.tick(TICK)

        job = _jobs(session, schedule.schedule_id)[0]
        assert job.status == "failed"
        assert job.error_code == "rail_timeout"
        assert EscrowLedger(session).available_balance(ctx.business_id) == authorized

    def test_failed_slot_retried_on_replay(self, session, ctx, fund, make_recipient, session_factory, emitter):
        """A failed job is re-armed when its occurrence is planned again."""
        fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])
        calls = []

        def flaky(instruction):
            calls.append(instruction.idempotency_key)
            if len(calls) == 1:
                return RailResult(success=False, message="Try again")
            return RailResult(success=True, reference="RAIL-OK")

        with Dispatcher(session_factory, StubRail(decide=flaky), emitter=emitter) as dispatcher:
            dispatcher.tick(TICK)
            schedule = _reload(session, schedule)
            schedule.next_run_at = RUN_AT
            session.commit()
            retry = dispatcher.process_schedule(schedule.schedule_id, TICK)

        jobs = _jobs(session, schedule.schedule_id)
        assert len(jobs) == 1
        assert retry.jobs_succeeded == 1
        assert jobs[0].status == "succeeded"
        assert jobs[0].attempts == 2
        assert jobs[0].rail_reference == "RAIL-OK"
        assert calls == [f"{jobs[0].job_id}:1", f"{jobs[0].job_id}:2"]

    def test_failing_handler_does_not_affect_state(
        self, session, ctx, fund, make_recipient, session_factory, emitter, emitted
    ):
        """Notification handler failures are isolated from disbursement state."""
        fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])

        def broken(event):
            raise RuntimeError("mail server down")

        emitter.on(JobSucceeded, broken)
        with Dispatcher(session_factory, StubRail(), emitter=emitter) as dispatcher:
            result = dispatcher.tick(TICK)

        assert result.jobs_succeeded == 1
        assert _jobs(session, schedule.schedule_id)[0].status == "succeeded"
        assert any(isinstance(e, JobSucceeded) for e in emitted)


class TestInactiveBusiness:
    """Suspended and banned businesses."""

    def test_suspended_business_not_queued(self, session, business, ctx, fund, make_recipient, dispatcher, emitted):
        """The occurrence stays due without advancing and runs after reactivation."""
        fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])
        business.status = "suspended"
        session.commit()

        skipped = dispatcher.tick(TICK)

        assert skipped.runs == []
        assert _jobs(session, schedule.schedule_id) == []
        assert _reload(session, schedule).next_run_at == RUN_AT
        assert emitted == []

        business.status = "active"
        session.commit()
        resumed = dispatcher.tick(TICK + timedelta(hours=1))

        assert resumed.jobs_succeeded == 1

    def test_suspended_during_tick_skipped(self, session, business, ctx, fund, make_recipient, dispatcher, emitted):
        """A schedule whose business is suspended after selection is skipped and reported."""
        fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])
        business.status = "suspended"
        session.commit()

        result = dispatcher.process_schedule(schedule.schedule_id, TICK)

        assert result.ran is False
        assert result.skipped_reason == BUSINESS_NOT_ACTIVE
        assert result.next_run_at == RUN_AT
        assert any(isinstance(e, ScheduleSkipped) for e in emitted)

    def test_suspended_schedules_do_not_starve_active_ones(
        self, session, ctx, fund, make_recipient, session_factory, emitter, emitted
    ):
        """With a queue of one, an older due schedule of a suspended business never blocks."""
        other = Business(name="Dormant Holdings", status="active")
        session.add(other)
        session.flush()
        dormant_ctx = BusinessContext(business_id=other.business_id, actor="owner@example.com")
        tenant = Recipient(business_id=other.business_id, name="Dormant Landlord")
        session.add(tenant)
        session.commit()
        dormant = ScheduleService(session).create_schedule(
            dormant_ctx,
            name="Dormant rent",
            kind="generic",
            run_at=datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc),
            frequency="monthly",
            amount="100",
            recipient_ids=[tenant.recipient_id],
            now=NOW,
        )
        other.status = "suspended"
        session.commit()

        fund("10000")
        active = ScheduleService(session).create_schedule(
            ctx,
            name="Office rent",
            kind="generic",
            run_at=datetime(2025, 3, 11, 9, 0, tzinfo=timezone.utc),
            frequency="monthly",
            amount="1000",
            recipient_ids=[make_recipient().recipient_id],
            now=NOW,
        )
        session.commit()

        config = DispatcherConfig(max_workers=1, queue_size=1)
        with Dispatcher(session_factory, StubRail(), emitter=emitter, config=config) as dispatcher:
            ticks = [
                dispatcher.tick(datetime(2025, 3, day, 9, 0, tzinfo=timezone.utc))
                for day in (12, 13, 14)
            ]

        assert [r.schedule_id for r in ticks[0].runs] == [active.schedule_id]
        assert ticks[0].jobs_succeeded == 1
        assert [t.runs for t in ticks[1:]] == [[], []]
        assert [j.status for j in _jobs(session, active.schedule_id)] == ["succeeded"]
        assert _jobs(session, dormant.schedule_id) == []
        assert _reload(session, dormant).next_run_at == datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
        assert not any(isinstance(e, ScheduleSkipped) for e in emitted)


class TestPayroll:
    """Payroll schedules compute per-employee net pay."""

    def test_net_pay_with_adjustments(self, session, ctx, fund, make_employee, dispatcher):
        """R20,000 gross nets R17,639.80, plus R500 transport, less 5% medical aid."""
        fund("50000")
        employee = make_employee(gross_salary="20000.00")
        adjustments = AdjustmentService(session)
        adjustments.create_adjustment(
            ctx, name="Transport", value_type="fixed", amount="500", direction="addition"
        )
        adjustments.create_adjustment(
            ctx,
            name="Medical aid",
            value_type="percentage",
            amount="5",
            direction="deduction",
            employee_id=employee.employee_id,
        )
        session.commit()
        schedule = _payroll_schedule(session, ctx, [employee])

        result = dispatcher.tick(TICK)

        job = _jobs(session, schedule.schedule_id)[0]
        assert result.jobs_succeeded == 1
        assert job.amount == Decimal("17139.80")
        assert job.employee_id == employee.employee_id
        assert job.breakdown["tax"]["net_salary"] == "17639.80"
        assert job.breakdown["adjustments"]["net"] == "-500.00"
        assert job.breakdown["final_amount"] == "17139.80"

    def test_once_off_bonus_only_in_its_month(self, session, ctx, fund, make_employee, dispatcher):
        """A once-off for March raises March pay; April is back to normal."""
        fund("50000")
        employee = make_employee(gross_salary="10000.00")
        adjustments = AdjustmentService(session)
        bonus = adjustments.create_adjustment(
            ctx, name="Bonus", value_type="fixed", amount="500", direction="addition"
        )
        adjustments.temporarily_change_adjustment(
            ctx,
            bonus.adjustment_id,
            amount="800",
            period_start=date(2025, 3, 1),
            period_end=date(2025, 3, 31),
        )
        session.commit()
        schedule = _payroll_schedule(session, ctx, [employee])

        dispatcher.tick(TICK)
        dispatcher.tick(NEXT_RUN)

        amounts = {j.period_start.month: j.amount for j in _jobs(session, schedule.schedule_id)}
        assert amounts == {3: Decimal("10336.25"), 4: Decimal("10036.25")}

    def test_inactive_employees_not_paid(self, session, ctx, fund, make_employee, dispatcher):
        """Deactivated employees get no job."""
        fund("50000")
        active = make_employee(name="Active")
        leaver = make_employee(name="Leaver")
        schedule = _payroll_schedule(session, ctx, [active, leaver])
        leaver.is_active = False
        session.commit()

        dispatcher.tick(TICK)

        assert [j.employee_id for j in _jobs(session, schedule.schedule_id)] == [active.employee_id]

    def test_negative_net_fails_without_reserving(self, session, ctx, fund, make_employee, dispatcher):
        """Deductions exceeding net pay fail the job instead of paying a negative amount."""
        fund("50000")
        employee = make_employee(gross_salary="5000.00")
        AdjustmentService(session).create_adjustment(
            ctx,
            name="Garnishee order",
            value_type="fixed",
            amount="6000",
            direction="deduction",
            employee_id=employee.employee_id,
        )
        session.commit()
        schedule = _payroll_schedule(session, ctx, [employee])

        dispatcher.tick(TICK)

        job = _jobs(session, schedule.schedule_id)[0]
        assert job.status == "failed"
        assert job.error_code == "non_positive_amount"
        assert EscrowLedger(session).balance_breakdown(ctx.business_id).consumed == Decimal("0.00")

    def test_overlapping_payroll_schedules_pay_once(self, session, ctx, fund, make_employee, dispatcher):
        """An employee on two monthly payrolls is paid for March by the first only."""
        fund("50000")
        employee = make_employee()
        first = _payroll_schedule(session, ctx, [employee])
        second = _payroll_schedule(
            session, ctx, [employee], run_at=datetime(2025, 3, 26, 9, 0, tzinfo=timezone.utc)
        )

        dispatcher.tick(TICK)
        result = dispatcher.tick(datetime(2025, 3, 26, 9, 0, tzinfo=timezone.utc))

        jobs = _employee_jobs(session, employee.employee_id)
        assert [j.schedule_id for j in jobs] == [first.schedule_id]
        assert result.runs[0].ran
        assert result.runs[0].overlaps == 1
        assert result.runs[0].job_ids == []

        run = [
            e
            for e in AuditLog(session).entries_for(ctx.business_id, action="schedule.run")
            if e.subject_id == second.schedule_id
        ]
        assert run[0].after["skipped_overlaps"] == [
            {"employee_id": str(employee.employee_id), "conflicting_job_id": str(jobs[0].job_id)}
        ]

    def test_overlapping_payrolls_in_one_tick(self, session, ctx, fund, make_employee, dispatcher):
        """Two payrolls due together for one employee still produce one March job."""
        fund("50000")
        employee = make_employee()
        _payroll_schedule(session, ctx, [employee])
        _payroll_schedule(
            session, ctx, [employee], run_at=datetime(2025, 3, 26, 9, 0, tzinfo=timezone.utc)
        )

        result = dispatcher.tick(datetime(2025, 3, 26, 9, 0, tzinfo=timezone.utc))

        assert result.schedules_run == 2
        assert sum(r.overlaps for r in result.runs) == 1
        assert len(_employee_jobs(session, employee.employee_id)) == 1

    def test_failed_overlap_does_not_block(self, session, ctx, fund, make_employee, dispatcher):
        """A failed job for the period leaves the employee payable by another schedule."""
        employee = make_employee()
        _payroll_schedule(session, ctx, [employee])
        dispatcher.tick(TICK)
        fund("50000")
        second = _payroll_schedule(
            session, ctx, [employee], run_at=datetime(2025, 3, 26, 9, 0, tzinfo=timezone.utc)
        )

        result = dispatcher.tick(datetime(2025, 3, 26, 9, 0, tzinfo=timezone.utc))

        assert result.runs[0].overlaps == 0
        assert [j.status for j in _jobs(session, second.schedule_id)] == ["succeeded"]

    def test_next_run_moves_off_weekends(self, session, ctx, fund, make_employee, dispatcher):
        """May 25, 2025 is a Sunday: payroll runs on Monday the 26th and still pays May."""
        fund("100000")
        employee = make_employee()
        schedule = _payroll_schedule(session, ctx, [employee])

        dispatcher.tick(TICK)
        dispatcher.tick(NEXT_RUN)
        assert _reload(session, schedule).next_run_at == datetime(2025, 5, 26, 9, 0, tzinfo=timezone.utc)

        result = dispatcher.tick(datetime(2025, 5, 26, 9, 0, tzinfo=timezone.utc))

        assert result.runs[0].period.to_dict() == {"start": "2025-05-01", "end": "2025-05-31"}
        assert _reload(session, schedule).next_run_at == datetime(2025, 6, 25, 9, 0, tzinfo=timezone.utc)
        assert len(_jobs(session, schedule.schedule_id)) == 3

    def test_generic_schedules_keep_weekend_dates(self, session, ctx, fund, make_recipient, dispatcher):
        """Only payroll follows business days."""
        fund("10000")
        schedule = _generic_schedule(session, ctx, [make_recipient()])

        dispatcher.tick(TICK)
        dispatcher.tick(NEXT_RUN)

        assert _reload(session, schedule).next_run_at == datetime(2025, 5, 25, 9, 0, tzinfo=timezone.utc)


class TestHandAuthoredDescriptors:
    """Descriptors written by hand rather than built from a frequency."""

    def test_twice_monthly_pays_each_occurrence(self, session, ctx, fund, make_recipient, dispatcher):
        """Every occurrence pays its own period, so none collide on a job slot."""
        fund("10000")
        schedule = ScheduleService(session).create_schedule(
            ctx,
            name="Fortnightly cleaning",
            kind="generic",
            cron_expression="0 9 1,15 * *",
            amount="500",
            recipient_ids=[make_recipient().recipient_id],
            now=datetime(2025, 2, 28, 8, 0, tzinfo=timezone.utc),
        )
        session.commit()

        first = dispatcher.tick(datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc))
        second = dispatcher.tick(datetime(2025, 3, 15, 9, 0, tzinfo=timezone.utc))

        assert first.jobs_succeeded == 1
        assert second.jobs_succeeded == 1
        assert second.runs[0].duplicates == 0
        periods = sorted((j.period_start, j.period_end) for j in _jobs(session, schedule.schedule_id))
        assert periods == [
            (date(2025, 2, 16), date(2025, 3, 1)),
            (date(2025, 3, 2), date(2025, 3, 15)),
        ]
        assert EscrowLedger(session).balance_breakdown(ctx.business_id).consumed == Decimal("1000.00")


class TestFundingForecast:
    """Warnings for escrow that cannot cover schedules due soon."""

    def test_shortfall_warned(self, session, ctx, fund, make_recipient, dispatcher, emitted):
        """Two R1,000 payments due in five days against R985 available."""
        fund("1000")
        schedule = _generic_schedule(session, ctx, [make_recipient(), make_recipient("Second")])

        forecasts = dispatcher.check_upcoming_balances(datetime(2025, 3, 20, 9, 0, tzinfo=timezone.utc))

        assert len(forecasts) == 1
        assert forecasts[0].is_short
        assert forecasts[0].required == Decimal("2000.00")
        assert forecasts[0].available == Decimal("985.00")
        warnings = [e for e in emitted if isinstance(e, UpcomingFundsInsufficient)]
        assert len(warnings) == 1
        assert warnings[0].schedule_ids == (schedule.schedule_id,)
        assert warnings[0].shortfall == Decimal("1015.00")
        assert warnings[0].window_end == datetime(2025, 3, 27, 9, 0, tzinfo=timezone.utc)
        assert warnings[0].category.value == "funding"

    def test_outside_window_ignored(self, session, ctx, fund, make_recipient, dispatcher, emitted):
        """A schedule due in more than a week is not counted yet."""
        fund("1000")
        _generic_schedule(session, ctx, [make_recipient()])

        assert dispatcher.check_upcoming_balances(NOW) == []
        assert emitted == []

    def test_funded_business_not_warned(self, session, ctx, fund, make_recipient, dispatcher, emitted):
        fund("10000")
        _generic_schedule(session, ctx, [make_recipient()])

        forecasts = dispatcher.check_upcoming_balances(datetime(2025, 3, 20, 9, 0, tzinfo=timezone.utc))

        assert [f.is_short for f in forecasts] == [False]
        assert forecasts[0].shortfall == Decimal("0.00")
        assert emitted == []

    def test_payroll_counts_gross_salary(self, session, ctx, fund, make_employee, dispatcher):
        """Payroll is estimated at gross pay for active employees."""
        fund("10000")
        active = make_employee(gross_salary="20000.00")
        leaver = make_employee(gross_salary="9000.00", name="Leaver")
        _payroll_schedule(session, ctx, [active, leaver])
        leaver.is_active = False
        session.commit()

        forecasts = dispatcher.check_upcoming_balances(datetime(2025, 3, 20, 9, 0, tzinfo=timezone.utc))

        assert forecasts[0].required == Decimal("20000.00")
        assert forecasts[0].shortfall == Decimal("10150.00")

    def test_suspended_business_not_forecast(self, session, business, ctx, fund, make_recipient, dispatcher, emitted):
        fund("100")
        _generic_schedule(session, ctx, [make_recipient()])
        business.status = "suspended"
        session.commit()

        assert dispatcher.check_upcoming_balances(datetime(2025, 3, 20, 9, 0, tzinfo=timezone.utc)) == []
        assert emitted == []


class TestRecovery:
    """Jobs abandoned by dead workers."""

    def test_stale_reservation_released(self, session, ctx, fund, make_job, dispatcher, emitted):
        """A processing job reserved long ago is failed and its funds freed."""
        authorized = fund("10000")
        job = make_job("1500.00")
        EscrowLedger(session).reserve(ctx.business_id, job.job_id, now=TICK - timedelta(hours=3))
        session.commit()

        result = dispatcher.tick(TICK)

        session.refresh(job)
        assert result.recovered_jobs == 1
        assert job.status == "failed"
        assert job.error_code == "reservation_expired"
        assert EscrowLedger(session).available_balance(ctx.business_id) == authorized
        assert [e.job_id for e in emitted if isinstance(e, JobFailed)] == [job.job_id]

    def test_recent_reservation_kept(self, session, ctx, fund, make_job, dispatcher):
        """Reservations younger than the stuck timeout are left alone."""
        fund("10000")
        job = make_job("1500.00")
        EscrowLedger(session).reserve(ctx.business_id, job.job_id, now=TICK - timedelta(minutes=30))
        session.commit()

        result = dispatcher.tick(TICK)

        session.refresh(job)
        assert result.recovered_jobs == 0
        assert job.status == "processing"

    def test_stale_pending_job_abandoned(self, session, make_job, dispatcher):
        """Pending jobs never picked up are failed as abandoned."""
        job = make_job("1500.00")
        later = datetime.now(timezone.utc) + timedelta(hours=3)

        result = dispatcher.tick(later)

        session.refresh(job)
        assert result.recovered_jobs == 1
        assert job.status == "failed"
        assert job.error_code == "abandoned"


def test_attempts_exhausted_counts_as_duplicate(session, ctx, fund, make_recipient, session_factory, emitter):
    """Once attempts are used up, a failed slot is not retried."""
    fund("10000")
    schedule = _generic_schedule(session, ctx, [make_recipient()])
    config = DispatcherConfig(max_workers=1, max_job_attempts=1)
    rail = StubRail(decide=lambda instruction: RailResult(success=False, message="No"))

    with Dispatcher(session_factory, rail, emitter=emitter, config=config) as dispatcher:
        dispatcher.tick(TICK)
        schedule = _reload(session, schedule)
        schedule.next_run_at = RUN_AT
        session.commit()
        replay = dispatcher.process_schedule(schedule.schedule_id, TICK)

    assert replay.duplicates == 1
    assert _jobs(session, schedule.schedule_id)[0].attempts == 1
