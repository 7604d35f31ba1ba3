"""Slot finder returning the earliest bookable starts for a service."""

import logging
import time as clock
from collections.abc import AsyncIterator
from contextlib import aclosing
from datetime import date, datetime, time, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import local_to_utc, to_naive_utc, utc_to_local, utcnow
from ..core.exceptions import NotFoundError, ValidationError
from ..core.observability import metrics_collector
from ..models.salon import Employee, Service, employee_services
from ..schemas.schedule import DaySchedule, SegmentType
from ..schemas.slots import AvailableSlot
from .schedule_service import Interval, ScheduleService, merge_intervals, windows_overlap

logger = logging.getLogger(__name__)

MAX_SLOT_LIMIT = 50

DEAD_SEGMENT_TYPES = (SegmentType.BREAK, SegmentType.TIME_BLOCK, SegmentType.BUFFER)


def _ceil_to_grid(value: datetime, day_start: datetime, grid_minutes: int) -> datetime:
    step = grid_minutes * 60
    seconds = int((value - day_start).total_seconds())
    return day_start + timedelta(seconds=-(-seconds // step) * step)


class SlotService:
    """Service for searching free appointment slots."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.schedule_service = ScheduleService(db)

    async def get_service_or_raise(self, salon_id: UUID, service_id: UUID) -> Service:
        """Active service of the salon or NotFoundError."""
        result = await self.db.execute(
            select(Service).where(
                Service.id == service_id,
                Service.salon_id == salon_id,
                Service.is_active.is_(True),
            )
        )
        service = result.scalar_one_or_none()
        if not service:
            raise NotFoundError(resource_type="service", resource_id=str(service_id))
        return service

    async def get_eligible_employees(
        self, salon_id: UUID, service_id: UUID, employee_id: UUID | None = None
    ) -> list[Employee]:
        """Active employees of the salon offering the service, ordered by id."""
        stmt = (
            select(Employee)
            .join(employee_services, employee_services.c.employee_id == Employee.id)
            .where(
                Employee.salon_id == salon_id,
                Employee.is_active.is_(True),
                employee_services.c.service_id == service_id,
            )
            .order_by(Employee.id)
        )
        if employee_id is not None:
            stmt = stmt.where(Employee.id == employee_id)

        result = await self.db.execute(stmt)
        return list(result.scalars())

    @staticmethod
    def _day_starts(schedule: DaySchedule, service: Service, earliest: datetime) -> list[datetime]:
        """Grid-aligned starts whose full footprint fits a working segment and avoids dead time."""
        prep = timedelta(minutes=service.prep_minutes)
        duration = timedelta(minutes=service.duration_minutes)
        cleanup = timedelta(minutes=service.cleanup_minutes)
        grid = timedelta(minutes=settings.slot_granularity_minutes)
        day_start = schedule.day_start

        dead: list[Interval] = merge_intervals(
            [(s.start_time, s.end_time) for s in schedule.segments if s.segment_type in DEAD_SEGMENT_TYPES]
            + [(b.start_time, b.end_time) for b in schedule.bookings]
        )

        starts = []
        for segment in schedule.of_type(SegmentType.WORKING):
            candidate = _ceil_to_grid(
                max(segment.start_time + prep, earliest), day_start, settings.slot_granularity_minutes
            )
            while candidate + duration + cleanup <= segment.end_time:
                footprint_start = candidate - prep
                footprint_end = candidate + duration + cleanup
                if not any(windows_overlap(footprint_start, footprint_end, s, e) for s, e in dead):
                    starts.append(candidate)
                candidate += grid
        return starts

    async def iter_available_slots(
        self,
        salon_id: UUID,
        service_id: UUID,
        date_from: date | datetime,
        date_to: date | None = None,
        employee_id: UUID | None = None,
        now: datetime | None = None,
    ) -> AsyncIterator[AvailableSlot]:
        """
        Lazily yield available slots day by day.

        Days are calendar days in the salon's timezone; ``date_from`` and
        ``date_to`` as dates are read there too, while slot times are naive UTC.

        Slots are ordered by start time, ties broken by employee id. Nothing
        starting before ``date_from`` (or ``now`` when given) is produced, so a
        search restarted from the last slot's end continues without overlap.
        Without ``date_to`` the scan stops after ``slot_search_max_days`` days.
        """
        service = await self.get_service_or_raise(salon_id, service_id)
        employees = await self.get_eligible_employees(salon_id, service_id, employee_id)
        if not employees:
            return

        zone = await self.schedule_service.get_salon_zone(salon_id)
        if isinstance(date_from, datetime):
            earliest = to_naive_utc(date_from)
        else:
            earliest = local_to_utc(date_from, time.min, zone)
        if now is not None:
            earliest = max(earliest, to_naive_utc(now))

        day = utc_to_local(earliest, zone).date()
        last_day = date_to or day + timedelta(days=settings.slot_search_max_days - 1)
        employee_ids = [e.id for e in employees]
        names = {e.id: e.full_name for e in employees}

        while day <= last_day:
            schedules = await self.schedule_service.get_day_schedules(salon_id, employee_ids, day)

            day_slots = []
            for employee_id_ in employee_ids:
                for start in self._day_starts(schedules[employee_id_], service, earliest):
                    day_slots.append(
                        AvailableSlot(
                            employee_id=employee_id_,
                            employee_name=names[employee_id_],
                            slot_start=start,
                            slot_end=start + timedelta(minutes=service.duration_minutes),
                        )
                    )

            day_slots.sort(key=lambda s: (s.slot_start, s.employee_id))
            for slot in day_slots:
                yield slot

            day += timedelta(days=1)

    async def find_first_available_slots(
        self,
        salon_id: UUID,
        service_id: UUID,
        date_from: date | datetime,
        date_to: date | None = None,
        employee_id: UUID | None = None,
        limit: int = 10,
        now: datetime | None = None,
    ) -> list[AvailableSlot]:
        """
        Return up to ``limit`` earliest slots for the service.

        An empty list means no availability was found within the searched range.

        Raises:
            ValidationError: If the limit or the date range is invalid
            NotFoundError: If the service does not exist or is inactive
        """
        if not 1 <= limit <= MAX_SLOT_LIMIT:
            raise ValidationError(
                detail=f"limit must be between 1 and {MAX_SLOT_LIMIT}",
                errors={"limit": limit},
            )
        first_day = date_from.date() if isinstance(date_from, datetime) else date_from
        if date_to is not None and date_to < first_day:
            raise ValidationError(
                detail="date_to must not be before date_from",
                errors={"date_to": date_to.isoformat()},
            )

        started = clock.perf_counter()
        slots: list[AvailableSlot] = []
        async with aclosing(
            self.iter_available_slots(
                salon_id,
                service_id,
                date_from,
                date_to=date_to,
                employee_id=employee_id,
                now=now if now is not None else utcnow(),
            )
        ) as available:
            async for slot in available:
                slots.append(slot)
                if len(slots) >= limit:
                    break

        elapsed = clock.perf_counter() - started
        metrics_collector.observe_slot_search(elapsed)

        logger.info(
            "Slot search completed",
            extra={
                "salon_id": str(salon_id),
                "service_id": str(service_id),
                "employee_id": str(employee_id) if employee_id else None,
                "date_from": date_from.isoformat(),
                "date_to": date_to.isoformat() if date_to else None,
                "found": len(slots),
                "limit": limit,
                "duration_ms": round(elapsed * 1000, 2),
            }
        )

        return slots
