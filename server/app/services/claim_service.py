"""Claim resolver: finalizes or releases waitlist offers."""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import to_naive_utc, utc_to_local, utcnow
from ..core.observability import metrics_collector
from ..models.booking import Booking, BookingStatus
from ..models.waitlist import OfferStatus, OfferTrigger, WaitlistEntry, WaitlistOffer, WaitlistStatus
from ..schemas.waitlist import ClaimResponse, ClaimResultStatus, OfferOutcome
from .booking_service import BookingService
from .conflict_service import ConflictService
from .offer_service import OfferService, hash_claim_token, record_lifecycle_event
from .policy_service import PolicyService
from .waitlist_service import WaitlistService

logger = logging.getLogger(__name__)

CLAIM_ACTIONS = ("accept", "decline")
SLOT_UNAVAILABLE_ERROR = "Slot no longer available"


class ClaimService:
    """
    Resolves claim links and sweeps expired offers.

    Every transition is a conditional update on the expected status, so of two
    concurrent responses to the same offer exactly one changes anything.
    """

    def __init__(self, db: AsyncSession, offer_service: OfferService | None = None):
        self.db = db
        self.offer_service = offer_service or OfferService(db)
        self.policy_service = PolicyService(db)
        self.conflict_service = ConflictService(db)
        self.booking_service = BookingService(db, offer_service=self.offer_service)

    def _response(self, result_status: ClaimResultStatus, message: str) -> ClaimResponse:
        metrics_collector.record_offer_resolved(result_status.value)
        return ClaimResponse(
            ok=result_status in (ClaimResultStatus.ACCEPTED, ClaimResultStatus.DECLINED),
            message=message,
            result_status=result_status,
        )

    def _invalid(self) -> ClaimResponse:
        return self._response(ClaimResultStatus.INVALID, "This link is no longer valid.")

    async def resolve_claim(
        self,
        token: str,
        action: str,
        response_channel: str = "web",
        now: datetime | None = None,
    ) -> ClaimResponse:
        """
        Accept or decline an offer identified by its claim token.

        An unknown, used or expired link changes nothing; only the expiry sweep
        moves an expired offer out of ``pending``.
        """
        now = to_naive_utc(now) if now else utcnow()

        if action not in CLAIM_ACTIONS or not token:
            return self._invalid()

        result = await self.db.execute(
            select(WaitlistOffer)
            .where(WaitlistOffer.token_hash == hash_claim_token(token))
            .execution_options(populate_existing=True)
        )
        offer = result.scalar_one_or_none()

        if offer is None or offer.status != OfferStatus.PENDING.value:
            logger.info(
                "Claim rejected - offer not pending",
                extra={"offer_id": str(offer.id) if offer else None, "action": action}
            )
            return self._invalid()

        if offer.token_expires_at <= now:
            logger.info("Claim rejected - offer expired", extra={"offer_id": str(offer.id), "action": action})
            return self._response(ClaimResultStatus.EXPIRED, "This offer has expired.")

        snapshot = {
            "offer_id": offer.id,
            "salon_id": offer.salon_id,
            "service_id": offer.service_id,
            "employee_id": offer.employee_id,
            "entry_id": offer.waitlist_entry_id,
            "slot_start": offer.slot_start,
            "slot_end": offer.slot_end,
        }

        if action == "accept":
            return await self._accept(snapshot, response_channel, now)
        return await self._decline(snapshot, response_channel, now)

    async def _flip_offer(self, offer_id: UUID, to_status: OfferStatus, response_channel: str, now: datetime) -> bool:
        result = await self.db.execute(
            update(WaitlistOffer)
            .where(
                WaitlistOffer.id == offer_id,
                WaitlistOffer.status == OfferStatus.PENDING.value,
                WaitlistOffer.token_expires_at > now,
            )
            .values(
                status=to_status.value,
                responded_at=now,
                response_channel=response_channel,
                updated_at=now,
            )
        )
        return result.rowcount == 1

    async def _move_entry(self, entry_id: UUID, from_status: str, to_status: str, now: datetime) -> bool:
        values: dict[str, Any] = {"status": to_status, "updated_at": now}
        if to_status == WaitlistStatus.WAITING.value:
            values.update(notified_at=None, expires_at=None)
        result = await self.db.execute(
            update(WaitlistEntry)
            .where(WaitlistEntry.id == entry_id, WaitlistEntry.status == from_status)
            .values(**values)
        )
        return result.rowcount == 1

    async def _accept(self, snap: dict[str, Any], response_channel: str, now: datetime) -> ClaimResponse:
        log_extra = {
            "offer_id": str(snap["offer_id"]),
            "entry_id": str(snap["entry_id"]),
            "employee_id": str(snap["employee_id"]),
            "slot_start": snap["slot_start"].isoformat(),
            "response_channel": response_channel,
        }

        if not await self._flip_offer(snap["offer_id"], OfferStatus.ACCEPTED, response_channel, now):
            await self.db.rollback()
            logger.info("Claim accept lost race", extra=log_extra)
            return self._invalid()

        await self.booking_service.get_employee_with_lock(snap["employee_id"])

        check = await self.conflict_service.validate_booking_change(
            employee_id=snap["employee_id"],
            new_start=snap["slot_start"],
            new_end=snap["slot_end"],
            now=now,
        )
        if not check.is_valid:
            await self.db.rollback()
            await self._release_unavailable(snap, response_channel, now)
            logger.info(
                "Claim accept failed - slot taken",
                extra={**log_extra, "conflict_codes": [c.message_code.value for c in check.conflicts]}
            )
            return self._response(
                ClaimResultStatus.SLOT_UNAVAILABLE,
                "Sorry, this slot is no longer available. You are still on the waitlist.",
            )

        entry = (
            await self.db.execute(
                select(WaitlistEntry)
                .where(WaitlistEntry.id == snap["entry_id"])
                .execution_options(populate_existing=True)
            )
        ).scalar_one()

        booking = Booking(
            salon_id=snap["salon_id"],
            employee_id=snap["employee_id"],
            service_id=snap["service_id"],
            start_time=snap["slot_start"],
            end_time=snap["slot_end"],
            status=BookingStatus.CONFIRMED.value,
            customer_name=entry.customer_name,
            customer_phone=entry.customer_phone,
            customer_email=entry.customer_email,
            waitlist_entry_id=entry.id,
        )
        self.db.add(booking)
        await self.db.flush()
        booking_id = booking.id

        await self.db.execute(
            update(WaitlistOffer).where(WaitlistOffer.id == snap["offer_id"]).values(booking_id=booking_id)
        )

        if not await self._move_entry(
            snap["entry_id"], WaitlistStatus.NOTIFIED.value, WaitlistStatus.ACCEPTED.value, now
        ):
            await self.db.rollback()
            logger.info("Claim accept failed - entry no longer notified", extra=log_extra)
            return self._invalid()

        record_lifecycle_event(
            self.db,
            entry_id=snap["entry_id"],
            salon_id=snap["salon_id"],
            from_status=WaitlistStatus.NOTIFIED.value,
            to_status=WaitlistStatus.ACCEPTED.value,
            reason="claim_accepted",
            metadata={
                "offer_id": str(snap["offer_id"]),
                "booking_id": str(booking_id),
                "response_channel": response_channel,
            },
        )
        await self.db.commit()

        logger.info("Waitlist offer accepted", extra={**log_extra, "booking_id": str(booking_id)})

        zone = await self.conflict_service.schedule_service.get_salon_zone(snap["salon_id"])
        local_start = utc_to_local(snap["slot_start"], zone)
        return self._response(
            ClaimResultStatus.ACCEPTED,
            f"Your appointment on {local_start:%a %d %b} at {local_start:%H:%M} is confirmed.",
        )

    async def _release_unavailable(self, snap: dict[str, Any], response_channel: str, now: datetime) -> None:
        """Expire an offer whose slot was taken and put the customer back in the queue."""
        await self.db.execute(
            update(WaitlistOffer)
            .where(WaitlistOffer.id == snap["offer_id"], WaitlistOffer.status == OfferStatus.PENDING.value)
            .values(
                status=OfferStatus.EXPIRED.value,
                last_error=SLOT_UNAVAILABLE_ERROR,
                responded_at=now,
                response_channel=response_channel,
                updated_at=now,
            )
        )
        if await self._move_entry(
            snap["entry_id"], WaitlistStatus.NOTIFIED.value, WaitlistStatus.WAITING.value, now
        ):
            record_lifecycle_event(
                self.db,
                entry_id=snap["entry_id"],
                salon_id=snap["salon_id"],
                from_status=WaitlistStatus.NOTIFIED.value,
                to_status=WaitlistStatus.WAITING.value,
                reason="slot_unavailable",
                metadata={"offer_id": str(snap["offer_id"]), "response_channel": response_channel},
            )
        await self.db.commit()

    async def _decline(self, snap: dict[str, Any], response_channel: str, now: datetime) -> ClaimResponse:
        policy = await self.policy_service.resolve_waitlist_policy(snap["salon_id"], snap["service_id"])
        to_status = WaitlistStatus.WAITING if policy.requeue_on_decline else WaitlistStatus.DECLINED

        if not await self._flip_offer(snap["offer_id"], OfferStatus.DECLINED, response_channel, now):
            await self.db.rollback()
            return self._invalid()

        if await self._move_entry(snap["entry_id"], WaitlistStatus.NOTIFIED.value, to_status.value, now):
            record_lifecycle_event(
                self.db,
                entry_id=snap["entry_id"],
                salon_id=snap["salon_id"],
                from_status=WaitlistStatus.NOTIFIED.value,
                to_status=to_status.value,
                reason="claim_declined",
                metadata={"offer_id": str(snap["offer_id"]), "response_channel": response_channel},
            )
        await self.db.commit()

        logger.info(
            "Waitlist offer declined",
            extra={
                "offer_id": str(snap["offer_id"]),
                "entry_id": str(snap["entry_id"]),
                "entry_status": to_status.value,
            }
        )

        return self._response(ClaimResultStatus.DECLINED, "You have declined this offer. Thank you for letting us know.")

    async def _time_out_entry(
        self,
        entry_id: UUID,
        salon_id: UUID,
        service_id: UUID,
        now: datetime,
        metadata: dict[str, Any],
    ) -> str | None:
        """
        Apply the expiry policy to a ``notified`` entry whose offer ran out.

        Every timeout counts as a passive decline. Without re-queueing the entry
        ends ``expired``; otherwise it cools down before it is offered slots again,
        for longer once the passive decline threshold is reached.

        Returns:
            The entry's new status, or None when it was no longer ``notified``
        """
        policy = await self.policy_service.resolve_waitlist_policy(salon_id, service_id)

        decline_count = (
            await self.db.execute(
                select(WaitlistEntry.decline_count).where(
                    WaitlistEntry.id == entry_id,
                    WaitlistEntry.status == WaitlistStatus.NOTIFIED.value,
                )
            )
        ).scalar_one_or_none()
        if decline_count is None:
            return None
        decline_count += 1

        values: dict[str, Any] = {"decline_count": decline_count, "updated_at": now}
        cooldown = policy.cooldown_after_timeout(decline_count)
        if not policy.requeue_on_expiry:
            to_status = WaitlistStatus.EXPIRED
        elif cooldown:
            to_status = WaitlistStatus.COOLDOWN
            values.update(notified_at=None, expires_at=None, cooldown_until=now + cooldown)
        else:
            to_status = WaitlistStatus.WAITING
            values.update(notified_at=None, expires_at=None)

        moved = await self.db.execute(
            update(WaitlistEntry)
            .where(
                WaitlistEntry.id == entry_id,
                WaitlistEntry.status == WaitlistStatus.NOTIFIED.value,
                WaitlistEntry.decline_count == decline_count - 1,
            )
            .values(status=to_status.value, **values)
        )
        if moved.rowcount == 0:
            return None

        record_lifecycle_event(
            self.db,
            entry_id=entry_id,
            salon_id=salon_id,
            from_status=WaitlistStatus.NOTIFIED.value,
            to_status=to_status.value,
            reason="offer_timeout",
            metadata={
                **metadata,
                "decline_count": decline_count,
                "passive_applied": decline_count >= policy.passive_decline_threshold,
                "cooldown_minutes": int(cooldown.total_seconds() // 60) if to_status == WaitlistStatus.COOLDOWN else 0,
            },
        )
        return to_status.value

    async def _expire_one(self, snap: dict[str, Any], now: datetime) -> tuple[bool, bool]:
        flipped = await self.db.execute(
            update(WaitlistOffer)
            .where(
                WaitlistOffer.id == snap["offer_id"],
                WaitlistOffer.status == OfferStatus.PENDING.value,
                WaitlistOffer.token_expires_at <= now,
            )
            .values(
                status=OfferStatus.EXPIRED.value,
                last_error="Offer expired",
                response_channel="system",
                updated_at=now,
            )
        )
        if flipped.rowcount == 0:
            await self.db.rollback()
            return False, False

        entry_status = await self._time_out_entry(
            snap["entry_id"],
            snap["salon_id"],
            snap["service_id"],
            now,
            {"offer_id": str(snap["offer_id"])},
        )
        await self.db.commit()
        metrics_collector.record_offer_resolved("expired")

        logger.info(
            "Waitlist offer expired",
            extra={
                "offer_id": str(snap["offer_id"]),
                "entry_id": str(snap["entry_id"]),
                "entry_status": entry_status,
            }
        )

        if not settings.chain_offers_on_expiry or snap["slot_start"] <= now:
            return True, False

        waitlist_service = WaitlistService(self.db, offer_service=self.offer_service)
        follow_up = await waitlist_service.handle_cancellation(
            salon_id=snap["salon_id"],
            service_id=snap["service_id"],
            slot_date=snap["slot_date"],
            employee_id=snap["employee_id"],
            slot_start=snap["slot_start"],
            slot_end=snap["slot_end"],
            trigger=OfferTrigger.LIFECYCLE_CHAIN,
        )
        return True, follow_up.outcome in (OfferOutcome.SENT, OfferOutcome.NOTIFICATION_FAILED)

    async def expire_offers(self, now: datetime | None = None, batch_size: int = 100) -> tuple[int, int]:
        """
        Expire pending offers past their deadline.

        The entry's expiry policy decides whether it ends ``expired`` or cools
        down before it is offered slots again. With ``chain_offers_on_expiry``
        the freed slot is offered to the next eligible entry. A row that fails
        is logged and skipped so it cannot hold up the rest of the batch.

        Returns:
            (offers expired, follow-up offers created)
        """
        now = to_naive_utc(now) if now else utcnow()

        result = await self.db.execute(
            select(WaitlistOffer)
            .where(
                WaitlistOffer.status == OfferStatus.PENDING.value,
                WaitlistOffer.token_expires_at <= now,
            )
            .order_by(WaitlistOffer.token_expires_at)
            .limit(batch_size)
        )
        due = [
            {
                "offer_id": o.id,
                "salon_id": o.salon_id,
                "service_id": o.service_id,
                "employee_id": o.employee_id,
                "entry_id": o.waitlist_entry_id,
                "slot_date": o.slot_date,
                "slot_start": o.slot_start,
                "slot_end": o.slot_end,
            }
            for o in result.scalars()
        ]

        expired = 0
        chained = 0
        for snap in due:
            try:
                was_expired, was_chained = await self._expire_one(snap, now)
            except Exception as e:
                await self.db.rollback()
                metrics_collector.record_sweep_error("offer_expiry")
                logger.warning(
                    "Failed processing expired waitlist offer",
                    extra={"offer_id": str(snap["offer_id"]), "error": str(e)},
                    exc_info=True
                )
                continue
            expired += was_expired
            chained += was_chained

        return expired, chained

    async def release_stale_entries(self, now: datetime | None = None, batch_size: int = 100) -> int:
        """
        Release ``notified`` entries past their deadline that have no pending offer.

        These are entries whose offer failed delivery; they follow the same
        expiry policy as timed-out offers.
        """
        now = to_naive_utc(now) if now else utcnow()

        result = await self.db.execute(
            select(WaitlistEntry.id, WaitlistEntry.salon_id, WaitlistEntry.service_id)
            .where(
                WaitlistEntry.status == WaitlistStatus.NOTIFIED.value,
                WaitlistEntry.expires_at <= now,
                ~exists().where(
                    WaitlistOffer.waitlist_entry_id == WaitlistEntry.id,
                    WaitlistOffer.status == OfferStatus.PENDING.value,
                ),
            )
            .order_by(WaitlistEntry.expires_at)
            .limit(batch_size)
        )
        stale = result.all()

        released = 0
        for entry_id, salon_id, service_id in stale:
            try:
                entry_status = await self._time_out_entry(
                    entry_id, salon_id, service_id, now, {"delivery_failed": True}
                )
                if entry_status is None:
                    await self.db.rollback()
                    continue
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                metrics_collector.record_sweep_error("stale_entries")
                logger.warning(
                    "Failed releasing stale waitlist entry",
                    extra={"entry_id": str(entry_id), "error": str(e)},
                    exc_info=True
                )
                continue
            released += 1

        if released:
            logger.info("Released stale notified entries", extra={"released_count": released})

        return released

    async def reactivate_cooldown_entries(self, now: datetime | None = None, batch_size: int = 500) -> int:
        """Return entries whose cooldown has run out to ``waiting``."""
        now = to_naive_utc(now) if now else utcnow()

        result = await self.db.execute(
            select(WaitlistEntry.id, WaitlistEntry.salon_id)
            .where(
                WaitlistEntry.status == WaitlistStatus.COOLDOWN.value,
                WaitlistEntry.cooldown_until <= now,
            )
            .order_by(WaitlistEntry.cooldown_until)
            .limit(batch_size)
        )
        due = result.all()

        reactivated = 0
        for entry_id, salon_id in due:
            try:
                moved = await self.db.execute(
                    update(WaitlistEntry)
                    .where(
                        WaitlistEntry.id == entry_id,
                        WaitlistEntry.status == WaitlistStatus.COOLDOWN.value,
                        WaitlistEntry.cooldown_until <= now,
                    )
                    .values(status=WaitlistStatus.WAITING.value, cooldown_until=None, updated_at=now)
                )
                if moved.rowcount == 0:
                    await self.db.rollback()
                    continue

                record_lifecycle_event(
                    self.db,
                    entry_id=entry_id,
                    salon_id=salon_id,
                    from_status=WaitlistStatus.COOLDOWN.value,
                    to_status=WaitlistStatus.WAITING.value,
                    reason="cooldown_reactivated",
                )
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                metrics_collector.record_sweep_error("cooldown_reactivation")
                logger.warning(
                    "Failed reactivating waitlist entry",
                    extra={"entry_id": str(entry_id), "error": str(e)},
                    exc_info=True
                )
                continue
            reactivated += 1

        if reactivated:
            logger.info("Reactivated waitlist entries after cooldown", extra={"reactivated_count": reactivated})

        return reactivated
