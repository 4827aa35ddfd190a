"""Pytest fixtures for disbursement engine tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.orm import Session, sessionmaker

from disbursement_engine.config import DispatcherConfig
from disbursement_engine.database import create_schema, create_session_factory, get_engine
from disbursement_engine.events import DomainEvent, EventEmitter
from disbursement_engine.models import Business, Employee, Job, Recipient, Schedule
from disbursement_engine.rails import StubRail
from disbursement_engine.services.context import BusinessContext
from disbursement_engine.services.dispatcher import Dispatcher
from disbursement_engine.services.escrow_ledger import EscrowLedger

# Fixed clock for schedule creation; the first monthly run on the 25th falls
# in March 2025.
NOW = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite database per test, shared by worker threads."""
    engine = get_engine(f"sqlite:///{tmp_path / 'disbursements.db'}")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture
def session(session_factory) -> Iterator[Session]:
    """Create a database session for each test."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def business(session: Session) -> Business:
    """Create an active test business."""
    business = Business(business_id=uuid4(), name="Test Trading (Pty) Ltd", status="active")
    session.add(business)
    session.commit()
    return business


@pytest.fixture
def ctx(business: Business) -> BusinessContext:
    return BusinessContext(business_id=business.business_id, actor="owner@example.com")


@pytest.fixture
def make_employee(session: Session, business: Business) -> Callable[..., Employee]:
    """Factory for employees of the test business."""

    def _make(
        gross_salary: str = "20000.00",
        name: str = "Thandi Nkosi",
        weekly_hours: list[int] | None = None,
        is_active: bool = True,
    ) -> Employee:
        employee = Employee(
            business_id=business.business_id,
            name=name,
            gross_salary=Decimal(gross_salary),
            weekly_hours=weekly_hours if weekly_hours is not None else [8, 8, 8, 8, 8, 0, 0],
            is_active=is_active,
        )
        session.add(employee)
        session.commit()
        return employee

    return _make


@pytest.fixture
def make_recipient(session: Session, business: Business) -> Callable[..., Recipient]:
    """Factory for payment recipients of the test business."""

    def _make(name: str = "Acme Landlords", email: str | None = None) -> Recipient:
        recipient = Recipient(business_id=business.business_id, name=name, email=email)
        session.add(recipient)
        session.commit()
        return recipient

    return _make


@pytest.fixture
def fund(session: Session, ctx: BusinessContext) -> Callable[[str], Decimal]:
    """Deposit and confirm escrow funds; returns the authorized amount."""

    def _fund(amount: str) -> Decimal:
        ledger = EscrowLedger(session)
        deposit = ledger.create_deposit(ctx, Decimal(amount))
        ledger.confirm_deposit(ctx, deposit.deposit_id)
        session.commit()
        return deposit.authorized_amount

    return _fund


@pytest.fixture
def rail() -> StubRail:
    return StubRail()


@pytest.fixture
def emitted() -> list[DomainEvent]:
    return []


@pytest.fixture
def emitter(emitted: list[DomainEvent]) -> EventEmitter:
    """Emitter recording every event into ``emitted``."""
    emitter = EventEmitter()
    emitter.on_all(emitted.append)
    return emitter


@pytest.fixture
def dispatcher_config() -> DispatcherConfig:
    return DispatcherConfig(max_workers=2, rail_timeout_seconds=2.0)


@pytest.fixture
def dispatcher(session_factory, rail, emitter, dispatcher_config) -> Iterator[Dispatcher]:
    dispatcher = Dispatcher(session_factory, rail, emitter=emitter, config=dispatcher_config)
    yield dispatcher
    dispatcher.close()


@pytest.fixture
def make_job(session: Session, business: Business) -> Callable[..., Job]:
    """Factory for pending jobs of one generic schedule, committed."""
    schedule = Schedule(
        business_id=business.business_id,
        kind="generic",
        name="Supplier payments",
        amount=Decimal("1.00"),
        cron_expression="0 9 25 * *",
        schedule_type="recurring",
        status="active",
    )
    session.add(schedule)
    session.commit()

    def _make(amount: str) -> Job:
        job = Job(
            schedule_id=schedule.schedule_id,
            business_id=business.business_id,
            period_start=date(2025, 3, 1),
            period_end=date(2025, 3, 31),
            amount=Decimal(amount),
            status="pending",
            payee_key=f"recipient:{uuid4()}",
            attempts=1,
        )
        session.add(job)
        session.commit()
        return job

    return _make
