"""Waitlist service for business logic operations."""

import logging
from datetime import date, datetime, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import UTC, to_naive_utc, utc_to_local, utcnow
from ..core.exceptions import ConflictError, NotFoundError, ValidationError
from ..models.salon import Employee, Service
from ..models.waitlist import OfferStatus, OfferTrigger, WaitlistEntry, WaitlistOffer, WaitlistStatus
from ..schemas.waitlist import JoinWaitlistRequest, OfferOutcome, OfferResult
from .offer_service import OFFER_EXISTS_ERROR, OfferService, record_lifecycle_event
from .schedule_service import ScheduleService

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (
    WaitlistStatus.WAITING.value,
    WaitlistStatus.NOTIFIED.value,
    WaitlistStatus.COOLDOWN.value,
)


def fits_preferred_window(
    entry: WaitlistEntry, slot_start: datetime, slot_end: datetime, zone: ZoneInfo = UTC
) -> bool:
    """True when the slot lies inside the entry's preferred salon-local time window, if it has one."""
    slot_start = utc_to_local(slot_start, zone)
    slot_end = utc_to_local(slot_end, zone)
    if entry.preferred_time_start is not None and slot_start.time() < entry.preferred_time_start:
        return False
    if entry.preferred_time_end is not None:
        # A slot ending at midnight is past any same-day window end
        if slot_end.date() > slot_start.date() or slot_end.time() > entry.preferred_time_end:
            return False
    return True


class WaitlistService:
    """Service for waitlist-related operations."""

    def __init__(self, db: AsyncSession, offer_service: OfferService | None = None):
        self.db = db
        self.offer_service = offer_service or OfferService(db)
        self.schedule_service = ScheduleService(db)

    async def join_waitlist(self, request: JoinWaitlistRequest) -> WaitlistEntry:
        """
        Add a customer to the waitlist.

        Args:
            request: Join waitlist request

        Returns:
            Created waitlist entry in ``waiting`` status

        Raises:
            NotFoundError: If the service or employee does not belong to the salon
            ValidationError: If the customer has no phone or email
        """
        service = (
            await self.db.execute(
                select(Service).where(
                    Service.id == request.service_id,
                    Service.salon_id == request.salon_id,
                    Service.is_active.is_(True),
                )
            )
        ).scalar_one_or_none()
        if not service:
            raise NotFoundError(resource_type="service", resource_id=str(request.service_id))

        if request.employee_id is not None:
            employee = (
                await self.db.execute(
                    select(Employee).where(
                        Employee.id == request.employee_id,
                        Employee.salon_id == request.salon_id,
                        Employee.is_active.is_(True),
                    )
                )
            ).scalar_one_or_none()
            if not employee:
                raise NotFoundError(resource_type="employee", resource_id=str(request.employee_id))

        if not request.customer_phone and not request.customer_email:
            raise ValidationError(
                detail="A phone number or email address is required to join the waitlist",
                errors={"customer_phone": "required without customer_email"},
            )

        entry = WaitlistEntry(
            salon_id=request.salon_id,
            service_id=request.service_id,
            employee_id=request.employee_id,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            customer_email=request.customer_email,
            preferred_date=request.preferred_date,
            preferred_time_start=request.preferred_time_start,
            preferred_time_end=request.preferred_time_end,
            status=WaitlistStatus.WAITING.value,
        )
        self.db.add(entry)
        await self.db.flush()

        record_lifecycle_event(
            self.db,
            entry_id=entry.id,
            salon_id=entry.salon_id,
            from_status=None,
            to_status=WaitlistStatus.WAITING.value,
            reason="joined",
        )
        await self.db.commit()
        await self.db.refresh(entry)

        logger.info(
            "Customer joined waitlist",
            extra={
                "entry_id": str(entry.id),
                "salon_id": str(entry.salon_id),
                "service_id": str(entry.service_id),
                "preferred_date": entry.preferred_date.isoformat(),
            }
        )

        return entry

    async def get_entry_by_id_or_raise(self, salon_id: UUID, entry_id: UUID) -> WaitlistEntry:
        """Get a salon's waitlist entry or raise NotFoundError."""
        result = await self.db.execute(
            select(WaitlistEntry)
            .where(WaitlistEntry.id == entry_id, WaitlistEntry.salon_id == salon_id)
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if not entry:
            logger.warning("Waitlist entry not found", extra={"entry_id": str(entry_id)})
            raise NotFoundError(resource_type="waitlist_entry", resource_id=str(entry_id))
        return entry

    async def list_entries(
        self,
        salon_id: UUID,
        status: WaitlistStatus | None = None,
        preferred_date: date | None = None,
    ) -> list[WaitlistEntry]:
        """Entries of a salon, oldest first."""
        stmt = select(WaitlistEntry).where(WaitlistEntry.salon_id == salon_id)
        if status is not None:
            stmt = stmt.where(WaitlistEntry.status == WaitlistStatus(status).value)
        if preferred_date is not None:
            stmt = stmt.where(WaitlistEntry.preferred_date == preferred_date)
        stmt = stmt.order_by(WaitlistEntry.created_at, WaitlistEntry.id)

        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def cancel_entry(self, salon_id: UUID, entry_id: UUID) -> WaitlistEntry:
        """
        Remove a customer from the waitlist.

        A pending offer for the entry is expired so its link can no longer be claimed.

        Raises:
            NotFoundError: If the entry does not exist
            ConflictError: If the entry already reached a final status other than cancelled
        """
        entry = await self.get_entry_by_id_or_raise(salon_id, entry_id)
        if entry.status == WaitlistStatus.CANCELLED.value:
            return entry

        from_status = entry.status
        now = utcnow()
        result = await self.db.execute(
            update(WaitlistEntry)
            .where(WaitlistEntry.id == entry_id, WaitlistEntry.status.in_(CANCELLABLE_STATUSES))
            .values(status=WaitlistStatus.CANCELLED.value, cooldown_until=None, updated_at=now)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            entry = await self.get_entry_by_id_or_raise(salon_id, entry_id)
            if entry.status == WaitlistStatus.CANCELLED.value:
                return entry
            raise ConflictError(
                detail=f"Waitlist entry {entry_id} cannot be cancelled (status: {entry.status})"
            )

        await self.db.execute(
            update(WaitlistOffer)
            .where(
                WaitlistOffer.waitlist_entry_id == entry_id,
                WaitlistOffer.status == OfferStatus.PENDING.value,
            )
            .values(status=OfferStatus.EXPIRED.value, last_error="Entry cancelled", updated_at=now)
        )
        record_lifecycle_event(
            self.db,
            entry_id=entry_id,
            salon_id=salon_id,
            from_status=from_status,
            to_status=WaitlistStatus.CANCELLED.value,
            reason="cancelled",
        )
        await self.db.commit()

        logger.info(
            "Waitlist entry cancelled",
            extra={"entry_id": str(entry_id), "from_status": from_status}
        )

        return await self.get_entry_by_id_or_raise(salon_id, entry_id)

    async def local_slot_date(self, salon_id: UUID, slot_start: datetime) -> date:
        """Salon-local calendar day a slot starts on; waitlist dates are kept in that calendar."""
        zone = await self.schedule_service.get_salon_zone(salon_id)
        return utc_to_local(to_naive_utc(slot_start), zone).date()

    async def find_candidate(
        self,
        salon_id: UUID,
        service_id: UUID,
        slot_date: date,
        employee_id: UUID,
        slot_start: datetime,
        slot_end: datetime,
        skip_already_offered: bool = False,
    ) -> WaitlistEntry | None:
        """Oldest waiting entry that accepts this employee and this slot."""
        stmt = (
            select(WaitlistEntry)
            .where(
                WaitlistEntry.salon_id == salon_id,
                WaitlistEntry.service_id == service_id,
                WaitlistEntry.preferred_date == slot_date,
                WaitlistEntry.status == WaitlistStatus.WAITING.value,
                (WaitlistEntry.employee_id.is_(None)) | (WaitlistEntry.employee_id == employee_id),
            )
            .order_by(WaitlistEntry.created_at, WaitlistEntry.id)
        )
        if skip_already_offered:
            stmt = stmt.where(
                ~exists().where(
                    WaitlistOffer.waitlist_entry_id == WaitlistEntry.id,
                    WaitlistOffer.employee_id == employee_id,
                    WaitlistOffer.slot_start == slot_start,
                )
            )

        zone = await self.schedule_service.get_salon_zone(salon_id)
        result = await self.db.execute(stmt)
        for entry in result.scalars():
            if fits_preferred_window(entry, slot_start, slot_end, zone):
                return entry
        return None

    async def handle_cancellation(
        self,
        salon_id: UUID,
        service_id: UUID,
        slot_date: date,
        employee_id: UUID,
        slot_start: datetime,
        slot_end: datetime | None = None,
        trigger: OfferTrigger = OfferTrigger.BOOKING_CANCELLATION,
    ) -> OfferResult:
        """
        Offer a freed slot to the oldest eligible waiting customer.

        Returns:
            The offer result; ``no_candidate`` when nobody is waiting for the slot
        """
        slot_start = to_naive_utc(slot_start)
        log_extra = {
            "salon_id": str(salon_id),
            "service_id": str(service_id),
            "employee_id": str(employee_id),
            "slot_start": slot_start.isoformat(),
            "trigger": OfferTrigger(trigger).value,
        }

        if await self.offer_service.get_pending_offer_for_slot(salon_id, employee_id, slot_start):
            logger.info("Freed slot already has a pending offer", extra=log_extra)
            return OfferResult(notified=False, outcome=OfferOutcome.OFFER_EXISTS, error=OFFER_EXISTS_ERROR)

        if slot_end is None:
            duration = (
                await self.db.execute(select(Service.duration_minutes).where(Service.id == service_id))
            ).scalar_one_or_none() or 30
            slot_end = slot_start + timedelta(minutes=duration)
        slot_end = to_naive_utc(slot_end)

        entry = await self.find_candidate(
            salon_id,
            service_id,
            slot_date,
            employee_id,
            slot_start,
            slot_end,
            skip_already_offered=OfferTrigger(trigger) == OfferTrigger.LIFECYCLE_CHAIN,
        )
        if entry is None:
            logger.info("No waitlist candidate for freed slot", extra=log_extra)
            return OfferResult(notified=False, outcome=OfferOutcome.NO_CANDIDATE)

        return await self.offer_service.create_and_send_offer(
            salon_id=salon_id,
            service_id=service_id,
            slot_date=slot_date,
            entry=entry,
            slot_start=slot_start,
            slot_end=slot_end,
            employee_id=employee_id,
            trigger=trigger,
        )

    async def notify_entry(
        self,
        salon_id: UUID,
        entry_id: UUID,
        slot_start: datetime,
        slot_end: datetime | None = None,
        employee_id: UUID | None = None,
    ) -> OfferResult:
        """Manually offer a slot to one specific entry."""
        entry = await self.get_entry_by_id_or_raise(salon_id, entry_id)
        slot_start = to_naive_utc(slot_start)
        return await self.offer_service.create_and_send_offer(
            salon_id=salon_id,
            service_id=entry.service_id,
            slot_date=await self.local_slot_date(salon_id, slot_start),
            entry=entry,
            slot_start=slot_start,
            slot_end=slot_end,
            employee_id=employee_id,
            trigger=OfferTrigger.MANUAL_NOTIFY,
        )
