"""Unit tests for the booking conflict checker."""

from datetime import date, time, timedelta, timezone

import pytest

from app.core.exceptions import ValidationError
from app.models import BookingStatus
from app.schemas.booking import ConflictCode
from app.services.conflict_service import ConflictService
from conftest import add_booking, add_break, add_time_block, at, future_day, set_salon_timezone


@pytest.mark.asyncio
async def test_overlapping_booking_is_reported(test_session, salon):
    day = future_day()
    booking_id = await add_booking(test_session, salon, salon.alice_id, at(day, 9), customer_name="Jane Doe")

    result = await ConflictService(test_session).validate_booking_change(
        employee_id=salon.alice_id,
        new_start=at(day, 9, 15),
        new_end=at(day, 9, 45),
        now=at(day, 8),
    )

    assert result.is_valid is False
    assert len(result.conflicts) == 1
    conflict = result.conflicts[0]
    assert conflict.message_code == ConflictCode.OVERLAPS_BOOKING
    assert conflict.booking_id == booking_id
    assert conflict.customer_name == "Jane Doe"
    assert conflict.service_name == "Haircut"
    assert "09:00-09:30" in conflict.message


@pytest.mark.asyncio
async def test_touching_window_is_free(test_session, salon):
    day = future_day()
    await add_booking(test_session, salon, salon.alice_id, at(day, 9))

    result = await ConflictService(test_session).validate_booking_change(
        employee_id=salon.alice_id, new_start=at(day, 9, 30), new_end=at(day, 10)
    )

    assert result.is_valid is True
    assert result.conflicts == []
    assert result.suggested_slots == []


@pytest.mark.asyncio
async def test_moved_booking_does_not_conflict_with_itself(test_session, salon):
    day = future_day()
    booking_id = await add_booking(test_session, salon, salon.alice_id, at(day, 9))

    result = await ConflictService(test_session).validate_booking_change(
        employee_id=salon.alice_id,
        new_start=at(day, 9, 15),
        new_end=at(day, 9, 45),
        booking_id=booking_id,
    )

    assert result.is_valid is True


@pytest.mark.asyncio
async def test_cancelled_and_other_employee_bookings_are_ignored(test_session, salon):
    day = future_day()
    await add_booking(test_session, salon, salon.alice_id, at(day, 9), status=BookingStatus.CANCELLED)
    await add_booking(test_session, salon, salon.bob_id, at(day, 9))

    result = await ConflictService(test_session).validate_booking_change(
        employee_id=salon.alice_id, new_start=at(day, 9), new_end=at(day, 9, 30)
    )

    assert result.is_valid is True


@pytest.mark.asyncio
async def test_conflicts_are_ordered_bookings_blocks_breaks(test_session, salon):
    day = future_day()
    await add_break(test_session, salon.alice_id, time(12), time(12, 45), label="Lunch")
    await add_time_block(test_session, salon, salon.alice_id, at(day, 12, 15), at(day, 13), "Supplier visit")
    await add_booking(test_session, salon, salon.alice_id, at(day, 12))

    result = await ConflictService(test_session).validate_booking_change(
        employee_id=salon.alice_id, new_start=at(day, 12), new_end=at(day, 12, 30), now=at(day, 8)
    )

    assert [c.message_code for c in result.conflicts] == [
        ConflictCode.OVERLAPS_BOOKING,
        ConflictCode.OVERLAPS_TIME_BLOCK,
        ConflictCode.OVERLAPS_BREAK,
    ]
    assert result.conflicts[1].title == "Supplier visit"
    assert result.conflicts[2].label == "Lunch"


@pytest.mark.asyncio
async def test_suggestions_alternate_around_requested_start(test_session, salon):
    day = future_day()
    await add_booking(test_session, salon, salon.alice_id, at(day, 10))

    result = await ConflictService(test_session).validate_booking_change(
        employee_id=salon.alice_id, new_start=at(day, 10), new_end=at(day, 10, 30), now=at(day, 8)
    )

    assert [(s.start_time, s.end_time) for s in result.suggested_slots] == [
        (at(day, 10, 30), at(day, 11)),
        (at(day, 9, 30), at(day, 10)),
        (at(day, 10, 45), at(day, 11, 15)),
    ]


@pytest.mark.asyncio
async def test_suggestions_never_start_in_the_past(test_session, salon):
    day = future_day()
    await add_booking(test_session, salon, salon.alice_id, at(day, 10))

    result = await ConflictService(test_session).validate_booking_change(
        employee_id=salon.alice_id, new_start=at(day, 10), new_end=at(day, 10, 30), now=at(day, 9, 40)
    )

    starts = [s.start_time for s in result.suggested_slots]
    assert starts == [at(day, 10, 30), at(day, 10, 45), at(day, 11)]


@pytest.mark.asyncio
async def test_aware_datetimes_are_compared_in_utc(test_session, salon):
    day = future_day()
    await add_booking(test_session, salon, salon.alice_id, at(day, 9))
    plus_two = timezone(timedelta(hours=2))

    result = await ConflictService(test_session).validate_booking_change(
        employee_id=salon.alice_id,
        new_start=at(day, 11, 15).replace(tzinfo=plus_two),
        new_end=at(day, 11, 45).replace(tzinfo=plus_two),
    )

    assert result.is_valid is False


@pytest.mark.asyncio
async def test_empty_window_is_rejected(test_session, salon):
    day = future_day()

    with pytest.raises(ValidationError):
        await ConflictService(test_session).validate_booking_change(
            employee_id=salon.alice_id, new_start=at(day, 10), new_end=at(day, 10)
        )


@pytest.mark.asyncio
async def test_suggestions_stay_inside_the_shift(test_session, salon):
    """Near the end of a 09:00-17:00 shift only earlier windows are proposed."""
    day = future_day()
    await add_booking(test_session, salon, salon.alice_id, at(day, 16, 30))

    result = await ConflictService(test_session).validate_booking_change(
        employee_id=salon.alice_id, new_start=at(day, 16, 45), new_end=at(day, 17, 15), now=at(day, 8)
    )

    assert result.is_valid is False
    assert [(s.start_time, s.end_time) for s in result.suggested_slots] == [
        (at(day, 16), at(day, 16, 30)),
        (at(day, 15, 45), at(day, 16, 15)),
        (at(day, 15, 30), at(day, 16)),
    ]


@pytest.mark.asyncio
async def test_suggestions_never_start_before_opening(test_session, salon):
    day = future_day()
    await add_booking(test_session, salon, salon.alice_id, at(day, 9))

    result = await ConflictService(test_session).validate_booking_change(
        employee_id=salon.alice_id, new_start=at(day, 9), new_end=at(day, 9, 30), now=at(day, 7)
    )

    starts = [s.start_time for s in result.suggested_slots]
    assert starts == [at(day, 9, 30), at(day, 9, 45), at(day, 10)]
    assert all(start >= at(day, 9) for start in starts)


@pytest.mark.asyncio
async def test_conflict_messages_use_salon_local_time(test_session, salon):
    await set_salon_timezone(test_session, salon, "Europe/Oslo")

    # 2026-01-12 is a Monday in winter, Oslo is UTC+1
    day = date(2026, 1, 12)
    await add_booking(test_session, salon, salon.alice_id, at(day, 9), customer_name="Jane Doe")

    result = await ConflictService(test_session).validate_booking_change(
        employee_id=salon.alice_id, new_start=at(day, 9), new_end=at(day, 9, 30), now=at(day, 7)
    )

    assert "10:00-10:30" in result.conflicts[0].message
