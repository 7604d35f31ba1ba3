"""Unit tests for booking creation and cancellation."""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from app.core.database import utcnow
from app.core.exceptions import ConflictError, NotFoundError, SlotUnavailableError
from app.models import BookingStatus, OfferTrigger, WaitlistEntry, WaitlistOffer, WaitlistStatus
from app.schemas.booking import CancelBookingRequest, CreateBookingRequest, GetBookingRequest
from app.schemas.waitlist import OfferOutcome
from app.services.booking_service import BookingService
from app.services.waitlist_service import WaitlistService
from conftest import add_booking, add_waitlist_entry, at, future_day, reload


def _create_request(salon, start, **overrides) -> CreateBookingRequest:
    data = dict(
        salon_id=salon.salon_id,
        employee_id=salon.alice_id,
        service_id=salon.haircut_id,
        start_time=start,
        customer_name="Jane Doe",
        customer_phone="+15550001111",
    )
    data.update(overrides)
    return CreateBookingRequest(**data)


@pytest.mark.asyncio
async def test_create_booking_defaults_end_to_service_duration(test_session, salon):
    day = future_day()

    booking = await BookingService(test_session).create_booking(_create_request(salon, at(day, 10)))

    assert booking.status == BookingStatus.CONFIRMED.value
    assert booking.end_time == at(day, 10, 30)
    fetched = await BookingService(test_session).get_booking(GetBookingRequest(booking_id=booking.id))
    assert fetched.id == booking.id


@pytest.mark.asyncio
async def test_create_booking_in_taken_window_lists_conflicts(test_session, salon):
    day = future_day()
    await add_booking(test_session, salon, salon.alice_id, at(day, 10))

    with pytest.raises(SlotUnavailableError) as exc_info:
        await BookingService(test_session).create_booking(_create_request(salon, at(day, 10, 15)))

    problem = exc_info.value.problem_details
    assert exc_info.value.status_code == 409
    assert problem["code"] == "SLOT_UNAVAILABLE"
    assert problem["conflicts"][0]["message_code"] == "overlaps_booking"
    assert len(problem["suggested_slots"]) > 0


@pytest.mark.asyncio
async def test_unknown_employee_or_booking(test_session, salon):
    with pytest.raises(NotFoundError):
        await BookingService(test_session).create_booking(
            _create_request(salon, at(future_day(), 10), employee_id=uuid4())
        )

    with pytest.raises(NotFoundError):
        await BookingService(test_session).get_booking(GetBookingRequest(booking_id=uuid4()))


@pytest.mark.asyncio
async def test_cancel_offers_freed_slot_to_waitlist(test_session, salon, offer_service):
    day = future_day()
    booking_id = await add_booking(test_session, salon, salon.alice_id, at(day, 10))
    entry_id = await add_waitlist_entry(test_session, salon, day)
    service = BookingService(test_session, offer_service=offer_service)

    booking, offer = await service.cancel_booking(CancelBookingRequest(booking_id=booking_id))

    assert booking.status == BookingStatus.CANCELLED.value
    assert offer.outcome == OfferOutcome.SENT
    assert offer.entry.id == entry_id
    assert offer.entry.status == WaitlistStatus.NOTIFIED
    stored = await reload(test_session, WaitlistOffer, offer.offer_id)
    assert stored.trigger == OfferTrigger.BOOKING_CANCELLATION.value
    assert (stored.slot_start, stored.slot_end) == (at(day, 10), at(day, 10, 30))

    again, second_offer = await service.cancel_booking(CancelBookingRequest(booking_id=booking_id))
    assert again.status == BookingStatus.CANCELLED.value
    assert second_offer is None


@pytest.mark.asyncio
async def test_cancel_without_notify_or_in_past_skips_waitlist(test_session, salon, offer_service):
    day = future_day()
    await add_waitlist_entry(test_session, salon, day)
    future_id = await add_booking(test_session, salon, salon.alice_id, at(day, 10))
    past_id = await add_booking(test_session, salon, salon.alice_id, utcnow() - timedelta(hours=2))
    service = BookingService(test_session, offer_service=offer_service)

    _, quiet = await service.cancel_booking(CancelBookingRequest(booking_id=future_id, notify_waitlist=False))
    _, past = await service.cancel_booking(CancelBookingRequest(booking_id=past_id))

    assert quiet is None
    assert past is None


@pytest.mark.asyncio
async def test_cancel_with_lost_offer_race_still_returns_booking(test_session, salon, offer_service, monkeypatch):
    day = future_day()
    booking_id = await add_booking(test_session, salon, salon.alice_id, at(day, 10))
    await add_waitlist_entry(test_session, salon, day)

    async def stale_candidate(self, *args, **kwargs):
        # Another request cancels the entry after it was picked
        entry = (await self.db.execute(select(WaitlistEntry))).scalar_one()
        await self.db.execute(
            update(WaitlistEntry)
            .values(status=WaitlistStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return entry

    monkeypatch.setattr(WaitlistService, "find_candidate", stale_candidate)

    booking, offer = await BookingService(test_session, offer_service=offer_service).cancel_booking(
        CancelBookingRequest(booking_id=booking_id)
    )

    assert offer.outcome == OfferOutcome.ENTRY_NOT_ELIGIBLE
    assert booking.id == booking_id
    assert booking.status == BookingStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_completed_booking_cannot_be_cancelled(test_session, salon):
    booking_id = await add_booking(
        test_session, salon, salon.alice_id, at(future_day(), 10), status=BookingStatus.COMPLETED
    )

    with pytest.raises(ConflictError):
        await BookingService(test_session).cancel_booking(CancelBookingRequest(booking_id=booking_id))
