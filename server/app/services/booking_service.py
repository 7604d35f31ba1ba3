"""Booking service for business logic operations."""

import logging
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import to_naive_utc, utcnow
from ..core.exceptions import ConflictError, NotFoundError, SlotUnavailableError
from ..models.booking import ACTIVE_BOOKING_STATUSES, Booking, BookingStatus
from ..models.salon import Employee, Service
from ..models.waitlist import OfferTrigger
from ..schemas.booking import CancelBookingRequest, CreateBookingRequest, GetBookingRequest
from ..schemas.waitlist import OfferResult
from .conflict_service import ConflictService
from .offer_service import OfferService
from .waitlist_service import WaitlistService

logger = logging.getLogger(__name__)


class BookingService:
    """Service for booking-related operations."""

    def __init__(self, db: AsyncSession, offer_service: OfferService | None = None):
        self.db = db
        self.conflict_service = ConflictService(db)
        self.offer_service = offer_service

    async def get_employee_by_id_or_raise(self, employee_id: UUID, salon_id: UUID | None = None) -> Employee:
        """Get employee by ID, optionally scoped to a salon, or raise NotFoundError."""
        stmt = select(Employee).where(Employee.id == employee_id)
        if salon_id is not None:
            stmt = stmt.where(Employee.salon_id == salon_id)
        employee = (await self.db.execute(stmt)).scalar_one_or_none()
        if not employee:
            logger.warning("Employee not found", extra={"employee_id": str(employee_id)})
            raise NotFoundError(resource_type="employee", resource_id=str(employee_id))
        return employee

    async def get_employee_with_lock(self, employee_id: UUID, salon_id: UUID | None = None) -> Employee:
        """
        Get employee by ID with an advisory lock serializing calendar writes.

        The lock is released when the transaction ends.
        """
        # SQLite (tests) serializes writers itself
        if self.db.bind and "postgresql" in str(self.db.bind.dialect.name):
            await self.db.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"),
                {"lock_key": f"employee:{employee_id}"}
            )

        employee = await self.get_employee_by_id_or_raise(employee_id, salon_id)

        logger.debug(
            "Acquired advisory lock for employee",
            extra={"employee_id": str(employee_id)}
        )

        return employee

    async def _get_service_or_raise(self, salon_id: UUID, service_id: UUID) -> Service:
        result = await self.db.execute(
            select(Service).where(Service.id == service_id, Service.salon_id == salon_id)
        )
        service = result.scalar_one_or_none()
        if not service:
            raise NotFoundError(resource_type="service", resource_id=str(service_id))
        return service

    async def create_booking(self, request: CreateBookingRequest) -> Booking:
        """
        Create a confirmed booking after checking the employee's calendar.

        Args:
            request: Booking creation request

        Returns:
            Created booking entity

        Raises:
            NotFoundError: If the service or employee is not found
            SlotUnavailableError: If the window conflicts with the calendar
        """
        service = await self._get_service_or_raise(request.salon_id, request.service_id)

        start_time = to_naive_utc(request.start_time)
        end_time = (
            to_naive_utc(request.end_time)
            if request.end_time
            else start_time + timedelta(minutes=service.duration_minutes)
        )

        await self.get_employee_with_lock(request.employee_id, request.salon_id)

        check = await self.conflict_service.validate_booking_change(
            employee_id=request.employee_id,
            new_start=start_time,
            new_end=end_time,
        )
        if not check.is_valid:
            await self.db.rollback()
            logger.warning(
                "Booking creation failed - slot unavailable",
                extra={
                    "employee_id": str(request.employee_id),
                    "start_time": start_time.isoformat(),
                    "conflict_count": len(check.conflicts),
                }
            )
            raise SlotUnavailableError(
                employee_id=str(request.employee_id),
                conflicts=[c.model_dump(mode="json") for c in check.conflicts],
                suggested_slots=[s.model_dump(mode="json") for s in check.suggested_slots],
            )

        booking = Booking(
            salon_id=request.salon_id,
            employee_id=request.employee_id,
            service_id=request.service_id,
            start_time=start_time,
            end_time=end_time,
            status=BookingStatus.CONFIRMED.value,
            is_walk_in=request.is_walk_in,
            notes=request.notes,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            customer_email=request.customer_email,
        )

        self.db.add(booking)
        await self.db.commit()
        await self.db.refresh(booking)

        logger.info(
            "Booking created successfully",
            extra={
                "booking_id": str(booking.id),
                "salon_id": str(booking.salon_id),
                "employee_id": str(booking.employee_id),
                "service_id": str(booking.service_id),
                "start_time": booking.start_time.isoformat(),
                "end_time": booking.end_time.isoformat(),
            }
        )

        return booking

    async def cancel_booking(self, request: CancelBookingRequest) -> tuple[Booking, OfferResult | None]:
        """
        Cancel a booking and offer the freed slot to the waitlist.

        Cancelling an already cancelled booking returns it unchanged.

        Returns:
            The cancelled booking and the waitlist offer result, if one was attempted

        Raises:
            NotFoundError: If booking not found
            ConflictError: If the booking is completed or a no-show
        """
        booking = await self.get_booking_by_id_or_raise(request.booking_id)

        if booking.status == BookingStatus.CANCELLED.value:
            logger.info(
                "Booking already cancelled - returning existing booking",
                extra={"booking_id": str(booking.id)}
            )
            return booking, None

        if booking.status not in ACTIVE_BOOKING_STATUSES:
            raise ConflictError(
                detail=f"Booking {booking.id} cannot be cancelled (status: {booking.status})"
            )

        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == booking.status)
            .values(status=BookingStatus.CANCELLED.value, updated_at=utcnow())
        )
        await self.db.commit()

        if result.rowcount == 0:
            await self.db.refresh(booking)
            logger.info(
                "Booking status changed concurrently",
                extra={"booking_id": str(booking.id), "status": booking.status}
            )
            if booking.status != BookingStatus.CANCELLED.value:
                raise ConflictError(
                    detail=f"Booking {booking.id} cannot be cancelled (status: {booking.status})"
                )
            return booking, None

        await self.db.refresh(booking)

        logger.info(
            "Booking cancelled successfully",
            extra={
                "booking_id": str(booking.id),
                "employee_id": str(booking.employee_id),
                "start_time": booking.start_time.isoformat(),
            }
        )

        if not request.notify_waitlist or booking.start_time <= utcnow():
            return booking, None

        booking_id = booking.id
        waitlist_service = WaitlistService(self.db, offer_service=self.offer_service)
        offer = await waitlist_service.handle_cancellation(
            salon_id=booking.salon_id,
            service_id=booking.service_id,
            slot_date=await waitlist_service.local_slot_date(booking.salon_id, booking.start_time),
            employee_id=booking.employee_id,
            slot_start=booking.start_time,
            slot_end=booking.end_time,
            trigger=OfferTrigger.BOOKING_CANCELLATION,
        )

        # A lost offer race rolls back the session and expires loaded rows
        return await self.get_booking_by_id_or_raise(booking_id), offer

    async def get_booking(self, request: GetBookingRequest) -> Booking:
        """
        Get booking by ID.

        Raises:
            NotFoundError: If booking not found
        """
        return await self.get_booking_by_id_or_raise(request.booking_id)

    async def get_booking_by_id(self, booking_id: UUID) -> Booking | None:
        """Get booking by ID."""
        stmt = select(Booking).where(Booking.id == booking_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_booking_by_id_or_raise(self, booking_id: UUID) -> Booking:
        """Get booking by ID or raise NotFoundError."""
        booking = await self.get_booking_by_id(booking_id)
        if not booking:
            logger.warning(
                "Booking not found",
                extra={"booking_id": str(booking_id)}
            )
            raise NotFoundError(
                resource_type="booking",
                resource_id=str(booking_id)
            )
        return booking
