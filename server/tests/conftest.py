"""Test configuration and fixtures."""

import re
from datetime import date, datetime, time, timedelta
from types import SimpleNamespace
from uuid import UUID

import pytest
import pytest_asyncio
import resend
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from twilio.base.exceptions import TwilioRestException

from app.core.database import Base, get_db, utcnow
from app.models import *  # noqa: F403 - Import all models
from app.models import (
    Booking,
    BookingStatus,
    Employee,
    EmployeeBreak,
    OpeningHours,
    Salon,
    Service,
    Shift,
    TimeBlock,
    WaitlistEntry,
    WaitlistStatus,
)
from app.services.notification_service import EmailService, SmsService
from app.services.offer_service import OfferService

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TOKEN_PATTERN = re.compile(r"token=([0-9a-f]+)")


class FakeTwilioClient:
    """Stands in for twilio.rest.Client; records messages or fails every send."""

    def __init__(self, fail: bool = False, error: Exception | None = None):
        self.fail = fail
        self.error = error
        self.sent: list[dict] = []
        self.messages = self

    def create(self, body: str, to: str, from_: str | None = None):
        if self.error is not None:
            raise self.error
        if self.fail:
            raise TwilioRestException(status=500, uri="/Messages.json", msg="Carrier rejected message", code=30008)
        self.sent.append({"body": body, "to": to, "from": from_})
        return SimpleNamespace(sid=f"SM{len(self.sent):032d}")


def extract_token(text: str) -> str:
    match = TOKEN_PATTERN.search(text)
    assert match, f"no claim token in {text!r}"
    return match.group(1)


def future_day(days: int = 7) -> date:
    return utcnow().date() + timedelta(days=days)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute))


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def test_session(test_engine):
    """Create a test database session."""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session


@pytest.fixture
def fake_twilio():
    return FakeTwilioClient()


@pytest.fixture
def email_outbox(monkeypatch):
    """Captures what would be handed to Resend."""
    outbox: list[dict] = []

    def fake_send(params):
        outbox.append(params)
        return {"id": f"email_{len(outbox)}"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    return outbox


@pytest.fixture
def sms_service(test_session, fake_twilio):
    return SmsService(test_session, client=fake_twilio)


@pytest.fixture
def email_service(email_outbox):
    service = EmailService()
    service.enabled = True
    return service


@pytest.fixture
def offer_service(test_session, sms_service, email_service):
    return OfferService(test_session, sms_service=sms_service, email_service=email_service)


@pytest_asyncio.fixture(scope="function")
async def salon(test_session):
    """
    One salon open 09:00-18:00 every day with two employees on 09:00-17:00 shifts.

    Only ids are returned; rows loaded by the test can be expired by a service rollback.
    """
    salon_row = Salon(name="Studio Nord", slug="studio-nord")
    test_session.add(salon_row)
    await test_session.flush()

    haircut = Service(salon_id=salon_row.id, name="Haircut", duration_minutes=30)
    colour = Service(
        salon_id=salon_row.id, name="Colour", duration_minutes=60, prep_minutes=15, cleanup_minutes=15
    )
    alice = Employee(salon_id=salon_row.id, full_name="Alice Example")
    bob = Employee(salon_id=salon_row.id, full_name="Bob Example")
    alice.services.extend([haircut, colour])
    bob.services.append(haircut)
    test_session.add_all([haircut, colour, alice, bob])
    await test_session.flush()

    for weekday in range(7):
        test_session.add(
            OpeningHours(salon_id=salon_row.id, weekday=weekday, opens_at=time(9), closes_at=time(18))
        )
        for employee in (alice, bob):
            test_session.add(
                Shift(employee_id=employee.id, weekday=weekday, starts_at=time(9), ends_at=time(17))
            )

    await test_session.commit()

    return SimpleNamespace(
        salon_id=salon_row.id,
        haircut_id=haircut.id,
        colour_id=colour.id,
        alice_id=alice.id,
        bob_id=bob.id,
    )


async def add_booking(
    session: AsyncSession,
    salon,
    employee_id: UUID,
    start: datetime,
    minutes: int = 30,
    service_id: UUID | None = None,
    customer_name: str = "Existing Customer",
    status: BookingStatus = BookingStatus.CONFIRMED,
) -> UUID:
    booking = Booking(
        salon_id=salon.salon_id,
        employee_id=employee_id,
        service_id=service_id or salon.haircut_id,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        status=status.value,
        customer_name=customer_name,
    )
    session.add(booking)
    await session.commit()
    return booking.id


async def set_salon_timezone(session: AsyncSession, salon, name: str) -> None:
    salon_row = await session.get(Salon, salon.salon_id)
    salon_row.timezone = name
    await session.commit()


async def add_time_block(session: AsyncSession, salon, employee_id: UUID, start: datetime, end: datetime, title: str) -> UUID:
    block = TimeBlock(
        salon_id=salon.salon_id, employee_id=employee_id, start_time=start, end_time=end, title=title
    )
    session.add(block)
    await session.commit()
    return block.id


async def add_break(session: AsyncSession, employee_id: UUID, starts_at: time, ends_at: time, label: str = "Lunch") -> None:
    session.add(EmployeeBreak(employee_id=employee_id, weekday=None, starts_at=starts_at, ends_at=ends_at, label=label))
    await session.commit()


async def add_waitlist_entry(
    session: AsyncSession,
    salon,
    preferred_date: date,
    customer_name: str = "Waiting Customer",
    phone: str | None = "+15550001111",
    email: str | None = None,
    employee_id: UUID | None = None,
    service_id: UUID | None = None,
    status: WaitlistStatus = WaitlistStatus.WAITING,
    created_at: datetime | None = None,
    preferred_time_start: time | None = None,
    preferred_time_end: time | None = None,
) -> UUID:
    entry = WaitlistEntry(
        salon_id=salon.salon_id,
        service_id=service_id or salon.haircut_id,
        employee_id=employee_id,
        customer_name=customer_name,
        customer_phone=phone,
        customer_email=email,
        preferred_date=preferred_date,
        preferred_time_start=preferred_time_start,
        preferred_time_end=preferred_time_end,
        status=status.value,
        created_at=created_at or utcnow(),
    )
    session.add(entry)
    await session.commit()
    return entry.id


async def reload(session: AsyncSession, model, row_id: UUID):
    return await session.get(model, row_id, populate_existing=True)


@pytest_asyncio.fixture(scope="function")
async def test_app(test_session, sms_service, email_service):
    """Create a test FastAPI application."""
    from fastapi import FastAPI

    from app.core.dependencies import get_email_service, get_sms_service
    from fastapi.exceptions import RequestValidationError

    from app.core.exceptions import (
        ProblemDetailsException,
        generic_exception_handler,
        problem_details_handler,
        validation_exception_handler,
    )
    from app.core.middleware import setup_middleware
    from app.routers import booking, claim, health, metrics, slots, waitlist

    # Without lifespan: no workers, no tracing exporters
    app = FastAPI(title="Salon Slot Allocation API (Test)", version="1.0.0-test")

    setup_middleware(app, enable_logging=True)
    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(health.router)
    app.include_router(booking.router)
    app.include_router(slots.router)
    app.include_router(waitlist.router)
    app.include_router(claim.router)
    app.include_router(metrics.router)

    async def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sms_service] = lambda: sms_service
    app.dependency_overrides[get_email_service] = lambda: email_service

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app):
    """Create a test HTTP client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
