"""Schedule service deriving employee day segments from the persisted calendar."""

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import UTC, local_to_utc, salon_zone, utc_to_local
from ..models.booking import ACTIVE_BOOKING_STATUSES, Booking
from ..models.salon import Employee, Salon, Service
from ..models.schedule import EmployeeBreak, OpeningHours, Shift, TimeBlock
from ..schemas.schedule import BookedInterval, DaySchedule, ScheduleSegment, SegmentType

logger = logging.getLogger(__name__)

Interval = tuple[datetime, datetime]


def windows_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open overlap test; windows that only touch do not overlap."""
    return a_start < b_end and b_start < a_end


def merge_intervals(intervals: list[Interval]) -> list[Interval]:
    """Sort and coalesce overlapping or touching intervals."""
    merged: list[Interval] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def intersect_intervals(left: list[Interval], right: list[Interval]) -> list[Interval]:
    """Pairwise intersection of two interval lists."""
    result = []
    for a_start, a_end in left:
        for b_start, b_end in right:
            start, end = max(a_start, b_start), min(a_end, b_end)
            if start < end:
                result.append((start, end))
    return merge_intervals(result)


def subtract_intervals(base: list[Interval], cut: list[Interval]) -> list[Interval]:
    """Parts of ``base`` not covered by ``cut``."""
    result = []
    cut = merge_intervals(cut)
    for start, end in merge_intervals(base):
        cursor = start
        for c_start, c_end in cut:
            if c_end <= cursor or c_start >= end:
                continue
            if c_start > cursor:
                result.append((cursor, c_start))
            cursor = max(cursor, c_end)
        if cursor < end:
            result.append((cursor, end))
    return result


def local_days(start: datetime, end: datetime, zone: ZoneInfo) -> list[date]:
    """Salon-local calendar days touched by the UTC window [start, end)."""
    day = utc_to_local(start, zone).date()
    last = utc_to_local(end, zone).date()
    days = []
    while day <= last:
        days.append(day)
        day += timedelta(days=1)
    return days


class ScheduleService:
    """
    Builds per-day schedules for employees.

    Recurring inputs (opening hours, shifts, breaks) are loaded once per service
    instance and reused for every day asked for; bookings and time blocks are
    queried per day.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._opening_hours: dict[UUID, dict[int, list[tuple[time, time]]]] = {}
        self._shifts: dict[UUID, dict[int, list[tuple[time, time]]]] = {}
        self._breaks: dict[UUID, list[EmployeeBreak]] = {}
        self._zones: dict[UUID, ZoneInfo] = {}
        self._employee_salons: dict[UUID, UUID | None] = {}

    async def get_salon_zone(self, salon_id: UUID) -> ZoneInfo:
        """Timezone the salon's calendar is kept in."""
        if salon_id not in self._zones:
            name = (
                await self.db.execute(select(Salon.timezone).where(Salon.id == salon_id))
            ).scalar_one_or_none()
            self._zones[salon_id] = salon_zone(name)
        return self._zones[salon_id]

    async def _employee_salon(self, employee_id: UUID) -> UUID | None:
        if employee_id not in self._employee_salons:
            self._employee_salons[employee_id] = (
                await self.db.execute(select(Employee.salon_id).where(Employee.id == employee_id))
            ).scalar_one_or_none()
        return self._employee_salons[employee_id]

    async def get_employee_zone(self, employee_id: UUID) -> ZoneInfo:
        salon_id = await self._employee_salon(employee_id)
        return await self.get_salon_zone(salon_id) if salon_id else UTC

    async def _load_opening_hours(self, salon_id: UUID) -> dict[int, list[tuple[time, time]]]:
        if salon_id not in self._opening_hours:
            result = await self.db.execute(
                select(OpeningHours).where(OpeningHours.salon_id == salon_id)
            )
            by_weekday: dict[int, list[tuple[time, time]]] = defaultdict(list)
            for row in result.scalars():
                by_weekday[row.weekday].append((row.opens_at, row.closes_at))
            self._opening_hours[salon_id] = by_weekday
        return self._opening_hours[salon_id]

    async def _load_employee_templates(self, employee_ids: list[UUID]) -> None:
        missing = [e for e in employee_ids if e not in self._shifts]
        if not missing:
            return

        for employee_id in missing:
            self._shifts[employee_id] = defaultdict(list)
            self._breaks[employee_id] = []

        shifts = await self.db.execute(select(Shift).where(Shift.employee_id.in_(missing)))
        for shift in shifts.scalars():
            self._shifts[shift.employee_id][shift.weekday].append((shift.starts_at, shift.ends_at))

        breaks = await self.db.execute(
            select(EmployeeBreak).where(EmployeeBreak.employee_id.in_(missing))
        )
        for employee_break in breaks.scalars():
            self._breaks[employee_break.employee_id].append(employee_break)

    def _working(
        self,
        employee_id: UUID,
        day: date,
        opening_hours: dict[int, list[tuple[time, time]]],
        zone: ZoneInfo,
    ) -> list[Interval]:
        """Shift intersected with opening hours on one salon-local day, in UTC."""
        weekday = day.weekday()
        opening = [(local_to_utc(day, o, zone), local_to_utc(day, c, zone)) for o, c in opening_hours.get(weekday, [])]
        shifts = [
            (local_to_utc(day, s, zone), local_to_utc(day, e, zone))
            for s, e in self._shifts[employee_id].get(weekday, [])
        ]
        return intersect_intervals(shifts, opening)

    def _break_segments(self, employee_id: UUID, day: date, zone: ZoneInfo) -> list[ScheduleSegment]:
        weekday = day.weekday()
        return [
            ScheduleSegment(
                segment_type=SegmentType.BREAK,
                start_time=local_to_utc(day, b.starts_at, zone),
                end_time=local_to_utc(day, b.ends_at, zone),
                employee_id=employee_id,
                label=b.label,
            )
            for b in self._breaks.get(employee_id, [])
            if b.weekday is None or b.weekday == weekday
        ]

    async def get_break_segments(
        self, employee_id: UUID, start: datetime, end: datetime
    ) -> list[ScheduleSegment]:
        """Recurring breaks of an employee that fall on any salon-local day touched by [start, end)."""
        zone = await self.get_employee_zone(employee_id)
        await self._load_employee_templates([employee_id])
        segments = []
        for day in local_days(start, end, zone):
            segments.extend(self._break_segments(employee_id, day, zone))
        return segments

    async def get_working_intervals(self, employee_id: UUID, start: datetime, end: datetime) -> list[Interval]:
        """Working time of an employee on every salon-local day touched by [start, end)."""
        salon_id = await self._employee_salon(employee_id)
        if salon_id is None:
            return []
        zone = await self.get_salon_zone(salon_id)
        opening_hours = await self._load_opening_hours(salon_id)
        await self._load_employee_templates([employee_id])

        working: list[Interval] = []
        for day in local_days(start, end, zone):
            working.extend(self._working(employee_id, day, opening_hours, zone))
        return merge_intervals(working)

    async def get_day_schedules(
        self, salon_id: UUID, employee_ids: list[UUID], day: date
    ) -> dict[UUID, DaySchedule]:
        """
        Derive the schedule of each employee for one salon-local day.

        Working time is the employee's shift intersected with the salon's opening
        hours; the rest of the day is closed. Buffers are the prep and cleanup
        spans around existing active bookings. Segment times are naive UTC.
        """
        zone = await self.get_salon_zone(salon_id)
        opening_hours = await self._load_opening_hours(salon_id)
        await self._load_employee_templates(employee_ids)

        # 23 or 25 hours long on DST changes
        day_start = local_to_utc(day, time.min, zone)
        day_end = local_to_utc(day + timedelta(days=1), time.min, zone)

        schedules = {}
        for employee_id in employee_ids:
            working = self._working(employee_id, day, opening_hours, zone)
            closed = subtract_intervals([(day_start, day_end)], working)

            segments = [
                ScheduleSegment(
                    segment_type=SegmentType.WORKING,
                    start_time=start,
                    end_time=end,
                    employee_id=employee_id,
                )
                for start, end in working
            ]
            segments.extend(
                ScheduleSegment(
                    segment_type=SegmentType.CLOSED,
                    start_time=start,
                    end_time=end,
                    employee_id=employee_id,
                )
                for start, end in closed
            )
            segments.extend(self._break_segments(employee_id, day, zone))
            schedules[employee_id] = DaySchedule(
                employee_id=employee_id, day=day, day_start=day_start, segments=segments
            )

        if not employee_ids:
            return schedules

        blocks = await self.db.execute(
            select(TimeBlock).where(
                TimeBlock.employee_id.in_(employee_ids),
                TimeBlock.start_time < day_end,
                TimeBlock.end_time > day_start,
            )
        )
        for block in blocks.scalars():
            schedules[block.employee_id].segments.append(
                ScheduleSegment(
                    segment_type=SegmentType.TIME_BLOCK,
                    start_time=max(block.start_time, day_start),
                    end_time=min(block.end_time, day_end),
                    employee_id=block.employee_id,
                    label=block.title,
                )
            )

        # Buffers of bookings on neighbouring days can spill into this one
        bookings = await self.db.execute(
            select(Booking, Service.prep_minutes, Service.cleanup_minutes)
            .join(Service, Service.id == Booking.service_id)
            .where(
                Booking.employee_id.in_(employee_ids),
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                Booking.start_time < day_end + timedelta(days=1),
                Booking.end_time > day_start - timedelta(days=1),
            )
        )
        for booking, prep_minutes, cleanup_minutes in bookings.all():
            schedule = schedules[booking.employee_id]
            if windows_overlap(booking.start_time, booking.end_time, day_start, day_end):
                schedule.bookings.append(
                    BookedInterval(
                        booking_id=booking.id,
                        start_time=booking.start_time,
                        end_time=booking.end_time,
                    )
                )
            buffers = [
                (booking.start_time - timedelta(minutes=prep_minutes), booking.start_time),
                (booking.end_time, booking.end_time + timedelta(minutes=cleanup_minutes)),
            ]
            for start, end in buffers:
                if start < end and windows_overlap(start, end, day_start, day_end):
                    schedule.segments.append(
                        ScheduleSegment(
                            segment_type=SegmentType.BUFFER,
                            start_time=start,
                            end_time=end,
                            employee_id=booking.employee_id,
                        )
                    )

        for schedule in schedules.values():
            schedule.segments.sort(key=lambda s: (s.start_time, s.end_time))

        logger.debug(
            "Built day schedules",
            extra={
                "salon_id": str(salon_id),
                "day": day.isoformat(),
                "employee_count": len(employee_ids),
            }
        )

        return schedules
