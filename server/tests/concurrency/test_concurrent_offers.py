"""Concurrency tests for waitlist offers and claims."""

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.database import Base
from app.models import Booking, OfferStatus, WaitlistOffer
from app.schemas.waitlist import ClaimResultStatus, OfferOutcome
from app.services.claim_service import ClaimService
from app.services.notification_service import SmsService
from app.services.offer_service import OfferService
from app.services.waitlist_service import WaitlistService
from conftest import add_waitlist_entry, at, extract_token, future_day


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed database so every session gets its own connection."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


def _offer_service(session, fake_twilio, email_service) -> OfferService:
    return OfferService(session, sms_service=SmsService(session, client=fake_twilio), email_service=email_service)


async def _pending_offers(session) -> int:
    result = await session.execute(
        select(func.count()).select_from(WaitlistOffer).where(WaitlistOffer.status == OfferStatus.PENDING.value)
    )
    return result.scalar_one()


@pytest.mark.asyncio
async def test_concurrent_cancellations_offer_slot_once(
    test_session, salon, session_factory, fake_twilio, email_service
):
    """Two handlers for the same freed slot produce exactly one pending offer."""
    day = future_day()
    await add_waitlist_entry(test_session, salon, day, customer_name="First", phone="+15550000001")
    await add_waitlist_entry(test_session, salon, day, customer_name="Second", phone="+15550000002")

    async def handle():
        async with session_factory() as session:
            service = WaitlistService(session, offer_service=_offer_service(session, fake_twilio, email_service))
            return await service.handle_cancellation(
                salon_id=salon.salon_id,
                service_id=salon.haircut_id,
                slot_date=day,
                employee_id=salon.alice_id,
                slot_start=at(day, 10),
            )

    results = await asyncio.gather(*(handle() for _ in range(4)))

    outcomes = [r.outcome for r in results]
    assert outcomes.count(OfferOutcome.SENT) == 1
    assert all(o in (OfferOutcome.SENT, OfferOutcome.OFFER_EXISTS, OfferOutcome.ENTRY_NOT_ELIGIBLE) for o in outcomes)
    assert await _pending_offers(test_session) == 1
    assert len(fake_twilio.sent) == 1


@pytest.mark.asyncio
async def test_concurrent_notifies_for_one_slot(test_session, salon, session_factory, fake_twilio, email_service):
    """Different entries racing for the same slot are kept apart by the pending-offer index."""
    day = future_day()
    entry_ids = [
        await add_waitlist_entry(test_session, salon, day, customer_name=f"Customer {i}", phone=f"+1555000010{i}")
        for i in range(3)
    ]

    async def notify(entry_id):
        async with session_factory() as session:
            service = WaitlistService(session, offer_service=_offer_service(session, fake_twilio, email_service))
            return await service.notify_entry(
                salon.salon_id, entry_id, slot_start=at(day, 10), employee_id=salon.alice_id
            )

    results = await asyncio.gather(*(notify(entry_id) for entry_id in entry_ids))

    assert [r.outcome for r in results].count(OfferOutcome.SENT) == 1
    assert await _pending_offers(test_session) == 1


@pytest.mark.asyncio
async def test_concurrent_accepts_book_once(
    test_session, salon, offer_service, session_factory, fake_twilio, email_service
):
    """Clicking the claim link twice at once creates exactly one booking."""
    day = future_day()
    entry_id = await add_waitlist_entry(test_session, salon, day)
    result = await WaitlistService(test_session, offer_service=offer_service).notify_entry(
        salon.salon_id, entry_id, slot_start=at(day, 10), employee_id=salon.alice_id
    )
    assert result.outcome == OfferOutcome.SENT
    token = extract_token(fake_twilio.sent[0]["body"])

    async def accept():
        async with session_factory() as session:
            claims = ClaimService(session, offer_service=_offer_service(session, fake_twilio, email_service))
            return await claims.resolve_claim(token=token, action="accept")

    results = await asyncio.gather(*(accept() for _ in range(3)))

    statuses = sorted(r.result_status.value for r in results)
    assert statuses == [
        ClaimResultStatus.ACCEPTED.value,
        ClaimResultStatus.INVALID.value,
        ClaimResultStatus.INVALID.value,
    ]
    bookings = (await test_session.execute(select(func.count()).select_from(Booking))).scalar_one()
    assert bookings == 1


@pytest.mark.asyncio
async def test_concurrent_accept_and_decline_resolve_once(
    test_session, salon, offer_service, session_factory, fake_twilio, email_service
):
    """Accept and decline racing on one link: exactly one wins and at most one booking exists."""
    day = future_day()
    entry_id = await add_waitlist_entry(test_session, salon, day)
    result = await WaitlistService(test_session, offer_service=offer_service).notify_entry(
        salon.salon_id, entry_id, slot_start=at(day, 10), employee_id=salon.alice_id
    )
    assert result.outcome == OfferOutcome.SENT
    token = extract_token(fake_twilio.sent[0]["body"])

    async def respond(action):
        async with session_factory() as session:
            claims = ClaimService(session, offer_service=_offer_service(session, fake_twilio, email_service))
            return await claims.resolve_claim(token=token, action=action)

    results = await asyncio.gather(respond("accept"), respond("decline"))

    assert [r.ok for r in results].count(True) == 1
    winner = next(r for r in results if r.ok)
    loser = next(r for r in results if not r.ok)
    assert loser.result_status == ClaimResultStatus.INVALID

    offer = (await test_session.execute(select(WaitlistOffer).execution_options(populate_existing=True))).scalar_one()
    bookings = (await test_session.execute(select(func.count()).select_from(Booking))).scalar_one()
    if winner.result_status == ClaimResultStatus.ACCEPTED:
        assert offer.status == OfferStatus.ACCEPTED.value
        assert bookings == 1
    else:
        assert winner.result_status == ClaimResultStatus.DECLINED
        assert offer.status == OfferStatus.DECLINED.value
        assert bookings == 0
