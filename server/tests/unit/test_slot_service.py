"""Unit tests for the first-available slot finder."""

from datetime import date, time, timedelta, timezone
from uuid import uuid4

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.services.slot_service import SlotService
from conftest import add_booking, add_break, add_time_block, at, future_day, set_salon_timezone


@pytest.mark.asyncio
async def test_fully_booked_day_rolls_over_to_next_day(test_session, salon):
    day = future_day()
    await add_booking(test_session, salon, salon.alice_id, at(day, 9), minutes=8 * 60)
    await add_time_block(
        test_session, salon, salon.alice_id, at(day + timedelta(days=1), 9), at(day + timedelta(days=1), 10), "Training"
    )

    slots = await SlotService(test_session).find_first_available_slots(
        salon_id=salon.salon_id,
        service_id=salon.haircut_id,
        date_from=day,
        employee_id=salon.alice_id,
        limit=1,
        now=at(day, 8),
    )

    assert len(slots) == 1
    assert slots[0].slot_start == at(day + timedelta(days=1), 10)
    assert slots[0].slot_end == at(day + timedelta(days=1), 10, 30)
    assert slots[0].employee_name == "Alice Example"


@pytest.mark.asyncio
async def test_slots_ordered_by_start_then_employee(test_session, salon):
    day = future_day()

    slots = await SlotService(test_session).find_first_available_slots(
        salon_id=salon.salon_id, service_id=salon.haircut_id, date_from=day, limit=4, now=at(day, 8)
    )

    first, second = sorted([salon.alice_id, salon.bob_id])
    assert [(s.slot_start, s.employee_id) for s in slots] == [
        (at(day, 9), first),
        (at(day, 9), second),
        (at(day, 9, 15), first),
        (at(day, 9, 15), second),
    ]


@pytest.mark.asyncio
async def test_start_is_rounded_up_to_grid_and_fits_before_shift_end(test_session, salon):
    day = future_day()

    slots = await SlotService(test_session).find_first_available_slots(
        salon_id=salon.salon_id,
        service_id=salon.haircut_id,
        date_from=at(day, 16, 20),
        date_to=day,
        employee_id=salon.alice_id,
        now=at(day, 8),
    )

    assert [s.slot_start for s in slots] == [at(day, 16, 30)]


@pytest.mark.asyncio
async def test_restarting_from_last_slot_end_does_not_overlap(test_session, salon):
    day = future_day()
    service = SlotService(test_session)

    first_page = await service.find_first_available_slots(
        salon_id=salon.salon_id,
        service_id=salon.haircut_id,
        date_from=day,
        employee_id=salon.alice_id,
        limit=3,
        now=at(day, 8),
    )
    second_page = await service.find_first_available_slots(
        salon_id=salon.salon_id,
        service_id=salon.haircut_id,
        date_from=first_page[-1].slot_end,
        employee_id=salon.alice_id,
        limit=3,
        now=at(day, 8),
    )

    assert [s.slot_start for s in first_page] == [at(day, 9), at(day, 9, 15), at(day, 9, 30)]
    assert second_page[0].slot_start == first_page[-1].slot_end
    assert all(s.slot_start >= first_page[-1].slot_end for s in second_page)


@pytest.mark.asyncio
async def test_prep_and_cleanup_footprint_avoids_bookings(test_session, salon):
    day = future_day()
    await add_booking(test_session, salon, salon.alice_id, at(day, 11))

    slots = await SlotService(test_session).find_first_available_slots(
        salon_id=salon.salon_id,
        service_id=salon.colour_id,
        date_from=day,
        date_to=day,
        limit=50,
        now=at(day, 8),
    )
    starts = [s.slot_start for s in slots]

    # Colour takes 15 min prep, 60 min service, 15 min cleanup
    assert starts[0] == at(day, 9, 15)
    assert at(day, 9, 45) in starts
    assert at(day, 10) not in starts
    assert at(day, 11, 30) not in starts
    assert at(day, 11, 45) in starts
    assert starts[-1] == at(day, 15, 45)
    assert {s.employee_id for s in slots} == {salon.alice_id}


@pytest.mark.asyncio
async def test_buffers_of_existing_bookings_are_dead_time(test_session, salon):
    day = future_day()
    await add_booking(test_session, salon, salon.alice_id, at(day, 11), minutes=60, service_id=salon.colour_id)

    slots = await SlotService(test_session).find_first_available_slots(
        salon_id=salon.salon_id,
        service_id=salon.haircut_id,
        date_from=day,
        date_to=day,
        employee_id=salon.alice_id,
        limit=50,
        now=at(day, 8),
    )
    starts = [s.slot_start for s in slots]

    assert at(day, 10, 15) in starts
    assert at(day, 10, 30) not in starts
    assert at(day, 12) not in starts
    assert at(day, 12, 15) in starts


@pytest.mark.asyncio
async def test_breaks_are_skipped(test_session, salon):
    day = future_day()
    await add_break(test_session, salon.alice_id, time(12), time(13))

    slots = await SlotService(test_session).find_first_available_slots(
        salon_id=salon.salon_id,
        service_id=salon.haircut_id,
        date_from=at(day, 11, 30),
        date_to=day,
        employee_id=salon.alice_id,
        limit=3,
        now=at(day, 8),
    )

    assert [s.slot_start for s in slots] == [at(day, 11, 30), at(day, 13), at(day, 13, 15)]


@pytest.mark.asyncio
async def test_nothing_before_now(test_session, salon):
    day = future_day()

    slots = await SlotService(test_session).find_first_available_slots(
        salon_id=salon.salon_id,
        service_id=salon.haircut_id,
        date_from=day,
        employee_id=salon.alice_id,
        limit=1,
        now=at(day, 12, 5),
    )

    assert slots[0].slot_start == at(day, 12, 15)


@pytest.mark.asyncio
async def test_aware_date_from_is_normalized(test_session, salon):
    day = future_day()
    plus_two = timezone(timedelta(hours=2))

    slots = await SlotService(test_session).find_first_available_slots(
        salon_id=salon.salon_id,
        service_id=salon.haircut_id,
        date_from=at(day, 12).replace(tzinfo=plus_two),
        employee_id=salon.alice_id,
        limit=1,
        now=at(day, 8),
    )

    assert slots[0].slot_start == at(day, 10)


@pytest.mark.asyncio
async def test_employee_without_service_has_no_slots(test_session, salon):
    day = future_day()

    slots = await SlotService(test_session).find_first_available_slots(
        salon_id=salon.salon_id,
        service_id=salon.colour_id,
        date_from=day,
        employee_id=salon.bob_id,
        now=at(day, 8),
    )

    assert slots == []


@pytest.mark.asyncio
async def test_invalid_arguments(test_session, salon):
    day = future_day()
    service = SlotService(test_session)

    with pytest.raises(ValidationError):
        await service.find_first_available_slots(
            salon_id=salon.salon_id, service_id=salon.haircut_id, date_from=day, limit=0
        )

    with pytest.raises(ValidationError):
        await service.find_first_available_slots(
            salon_id=salon.salon_id,
            service_id=salon.haircut_id,
            date_from=day,
            date_to=day - timedelta(days=1),
        )

    with pytest.raises(NotFoundError):
        await service.find_first_available_slots(
            salon_id=salon.salon_id, service_id=uuid4(), date_from=day
        )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "day, first_start_utc",
    [
        (date(2027, 1, 11), time(8)),   # Oslo winter, UTC+1
        (date(2027, 6, 14), time(7)),   # Oslo summer, UTC+2
    ],
)
async def test_opening_hours_are_salon_local(test_session, salon, day, first_start_utc):
    await set_salon_timezone(test_session, salon, "Europe/Oslo")

    slots = await SlotService(test_session).find_first_available_slots(
        salon_id=salon.salon_id,
        service_id=salon.haircut_id,
        date_from=day,
        employee_id=salon.alice_id,
        limit=1,
        now=at(day - timedelta(days=1), 12),
    )

    assert slots[0].slot_start == at(day, first_start_utc.hour)


@pytest.mark.asyncio
async def test_local_breaks_are_skipped_in_utc(test_session, salon):
    await set_salon_timezone(test_session, salon, "Europe/Oslo")
    await add_break(test_session, salon.alice_id, time(12), time(12, 30))
    day = date(2027, 1, 11)

    slots = await SlotService(test_session).find_first_available_slots(
        salon_id=salon.salon_id,
        service_id=salon.haircut_id,
        date_from=at(day, 10, 45),
        employee_id=salon.alice_id,
        limit=1,
        now=at(day, 10, 45),
    )

    # Lunch 12:00-12:30 Oslo is 11:00-11:30 UTC
    assert slots[0].slot_start == at(day, 11, 30)
