"""Conflict checker for proposed booking windows."""

import logging
from datetime import datetime, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import to_naive_utc, utc_to_local, utcnow
from ..core.exceptions import ValidationError
from ..core.observability import metrics_collector
from ..models.booking import ACTIVE_BOOKING_STATUSES, Booking
from ..models.salon import Service
from ..models.schedule import TimeBlock
from ..schemas.booking import Conflict, ConflictCode, SuggestedSlot, ValidateBookingResponse
from .schedule_service import Interval, ScheduleService, windows_overlap

logger = logging.getLogger(__name__)


def _hhmm(start: datetime, end: datetime, zone: ZoneInfo) -> str:
    return f"{utc_to_local(start, zone):%H:%M}-{utc_to_local(end, zone):%H:%M}"


class ConflictService:
    """Service answering whether an employee can take a booking in a given window."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.schedule_service = ScheduleService(db)

    async def _load_busy(
        self,
        employee_id: UUID,
        window_start: datetime,
        window_end: datetime,
        exclude_booking_id: UUID | None,
        zone: ZoneInfo,
    ) -> list[Conflict]:
        """Everything blocking the employee inside the window, bookings first, then time blocks, then breaks."""
        busy: list[Conflict] = []

        stmt = (
            select(Booking, Service.name)
            .join(Service, Service.id == Booking.service_id)
            .where(
                Booking.employee_id == employee_id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                Booking.start_time < window_end,
                Booking.end_time > window_start,
            )
            .order_by(Booking.start_time)
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)

        for booking, service_name in (await self.db.execute(stmt)).all():
            busy.append(
                Conflict(
                    message_code=ConflictCode.OVERLAPS_BOOKING,
                    message=(
                        f"Overlaps booking for {booking.customer_name} ({service_name}) "
                        f"{_hhmm(booking.start_time, booking.end_time, zone)}"
                    ),
                    start_time=booking.start_time,
                    end_time=booking.end_time,
                    booking_id=booking.id,
                    customer_name=booking.customer_name,
                    service_name=service_name,
                )
            )

        blocks = await self.db.execute(
            select(TimeBlock)
            .where(
                TimeBlock.employee_id == employee_id,
                TimeBlock.start_time < window_end,
                TimeBlock.end_time > window_start,
            )
            .order_by(TimeBlock.start_time)
        )
        for block in blocks.scalars():
            busy.append(
                Conflict(
                    message_code=ConflictCode.OVERLAPS_TIME_BLOCK,
                    message=f"Overlaps time block '{block.title}' {_hhmm(block.start_time, block.end_time, zone)}",
                    start_time=block.start_time,
                    end_time=block.end_time,
                    title=block.title,
                )
            )

        breaks = await self.schedule_service.get_break_segments(employee_id, window_start, window_end)
        for segment in sorted(breaks, key=lambda s: s.start_time):
            busy.append(
                Conflict(
                    message_code=ConflictCode.OVERLAPS_BREAK,
                    message=f"Overlaps {segment.label} {_hhmm(segment.start_time, segment.end_time, zone)}",
                    start_time=segment.start_time,
                    end_time=segment.end_time,
                    label=segment.label,
                )
            )

        return busy

    @staticmethod
    def _overlapping(busy: list[Conflict], start: datetime, end: datetime) -> list[Conflict]:
        return [c for c in busy if windows_overlap(c.start_time, c.end_time, start, end)]

    @staticmethod
    def _within_working_time(working: list[Interval], start: datetime, end: datetime) -> bool:
        return any(w_start <= start and end <= w_end for w_start, w_end in working)

    def _suggest_slots(
        self,
        busy: list[Conflict],
        working: list[Interval],
        start: datetime,
        end: datetime,
        now: datetime,
    ) -> list[SuggestedSlot]:
        """
        Try +step, -step, +2*step, ... around the requested start for free windows.

        A candidate must lie inside the employee's working time and must not
        start in the past.
        """
        duration = end - start
        step = timedelta(minutes=settings.conflict_suggestion_step_minutes)
        horizon = timedelta(minutes=settings.conflict_suggestion_horizon_minutes)
        wanted = settings.conflict_suggestion_count

        suggestions: list[SuggestedSlot] = []
        k = 1
        while len(suggestions) < wanted and step * k <= horizon:
            for offset in (step * k, -step * k):
                candidate = start + offset
                if candidate < now:
                    continue
                if not self._within_working_time(working, candidate, candidate + duration):
                    continue
                if self._overlapping(busy, candidate, candidate + duration):
                    continue
                suggestions.append(SuggestedSlot(start_time=candidate, end_time=candidate + duration))
                if len(suggestions) == wanted:
                    break
            k += 1

        return suggestions

    async def validate_booking_change(
        self,
        employee_id: UUID,
        new_start: datetime,
        new_end: datetime,
        booking_id: UUID | None = None,
        now: datetime | None = None,
    ) -> ValidateBookingResponse:
        """
        Check a proposed window against the employee's bookings, time blocks and breaks.

        Args:
            employee_id: Employee whose calendar is checked
            new_start: Proposed start
            new_end: Proposed end, exclusive
            booking_id: Booking being moved; it never conflicts with itself
            now: Reference time for suggestions, defaults to the current time

        Returns:
            Validity flag, the conflicts found and alternative windows

        Raises:
            ValidationError: If the window is empty or inverted
        """
        new_start = to_naive_utc(new_start)
        new_end = to_naive_utc(new_end)
        now = to_naive_utc(now) if now else utcnow()

        if new_end <= new_start:
            raise ValidationError(
                detail="end_time must be after start_time",
                errors={"end_time": "must be after start_time"},
            )

        horizon = timedelta(minutes=settings.conflict_suggestion_horizon_minutes)
        window_start, window_end = new_start - horizon, new_end + horizon
        zone = await self.schedule_service.get_employee_zone(employee_id)
        busy = await self._load_busy(employee_id, window_start, window_end, booking_id, zone)

        conflicts = self._overlapping(busy, new_start, new_end)
        if not conflicts:
            return ValidateBookingResponse(is_valid=True)

        for conflict in conflicts:
            metrics_collector.record_conflict(conflict.message_code.value)

        working = await self.schedule_service.get_working_intervals(employee_id, window_start, window_end)
        suggestions = self._suggest_slots(busy, working, new_start, new_end, now)

        logger.info(
            "Booking window has conflicts",
            extra={
                "employee_id": str(employee_id),
                "booking_id": str(booking_id) if booking_id else None,
                "start_time": new_start.isoformat(),
                "end_time": new_end.isoformat(),
                "conflict_codes": [c.message_code.value for c in conflicts],
                "suggestion_count": len(suggestions),
            }
        )

        return ValidateBookingResponse(
            is_valid=False,
            conflicts=conflicts,
            suggested_slots=suggestions,
        )
