"""Offer coordinator: creates waitlist offers and delivers claim links."""

import hashlib
import hmac
import html
import logging
import secrets
from datetime import date, datetime, timedelta
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import salon_zone, to_naive_utc, utc_to_local, utcnow
from ..core.observability import metrics_collector
from ..models.salon import Salon, Service
from ..models.waitlist import (
    OfferStatus,
    OfferTrigger,
    WaitlistEntry,
    WaitlistLifecycleEvent,
    WaitlistOffer,
    WaitlistStatus,
)
from ..schemas.waitlist import OfferOutcome, OfferResult
from ..schemas.waitlist import WaitlistEntry as WaitlistEntrySchema
from .notification_service import EmailService, SmsService
from .policy_service import PolicyService

logger = logging.getLogger(__name__)

OFFER_EXISTS_ERROR = "A pending offer already exists for this slot"
ENTRY_NOT_ELIGIBLE_ERROR = "Entry no longer eligible for notify"
MISSING_EMPLOYEE_ERROR = "Employee is required to create a claim offer"
MISSING_CONTACT_ERROR = "Customer has no phone or email for claim-link delivery"
DELIVERY_FAILED_ERROR = "Notification delivery failed"


def generate_claim_token() -> str:
    return secrets.token_hex(24)


def hash_claim_token(token: str) -> str:
    """Keyed digest stored in place of the raw claim token."""
    return hmac.new(
        settings.claim_token_secret.encode("utf-8"),
        token.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def build_claim_url(action: str, token: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/waitlist/claim?action={action}&token={token}"


def record_lifecycle_event(
    db: AsyncSession,
    entry_id: UUID,
    salon_id: UUID,
    from_status: str | None,
    to_status: str,
    reason: str,
    metadata: dict[str, Any] | None = None,
) -> WaitlistLifecycleEvent:
    """Stage an append-only lifecycle row in the current transaction."""
    event = WaitlistLifecycleEvent(
        waitlist_entry_id=entry_id,
        salon_id=salon_id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        event_metadata=metadata or {},
    )
    db.add(event)
    return event


class OfferService:
    """Creates single-use, time-boxed offers and sends them by SMS and email."""

    def __init__(
        self,
        db: AsyncSession,
        sms_service: SmsService | None = None,
        email_service: EmailService | None = None,
    ):
        self.db = db
        self.sms_service = sms_service or SmsService(db)
        self.email_service = email_service or EmailService()
        self.policy_service = PolicyService(db)

    async def _reload_entry(self, entry_id: UUID) -> WaitlistEntry | None:
        result = await self.db.execute(
            select(WaitlistEntry)
            .where(WaitlistEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _result(
        self,
        entry_id: UUID,
        outcome: OfferOutcome,
        notified: bool = False,
        offer_id: UUID | None = None,
        error: str | None = None,
        warning: str | None = None,
    ) -> OfferResult:
        entry = await self._reload_entry(entry_id)
        return OfferResult(
            notified=notified,
            outcome=outcome,
            entry=WaitlistEntrySchema.model_validate(entry) if entry else None,
            offer_id=offer_id,
            error=error,
            warning=warning,
        )

    async def get_pending_offer_for_slot(
        self, salon_id: UUID, employee_id: UUID, slot_start: datetime
    ) -> WaitlistOffer | None:
        result = await self.db.execute(
            select(WaitlistOffer).where(
                WaitlistOffer.salon_id == salon_id,
                WaitlistOffer.employee_id == employee_id,
                WaitlistOffer.slot_start == slot_start,
                WaitlistOffer.status == OfferStatus.PENDING.value,
            )
        )
        return result.scalars().first()

    async def _names(self, salon_id: UUID, service_id: UUID) -> tuple[str, ZoneInfo, Service | None]:
        salon = (
            await self.db.execute(select(Salon.name, Salon.timezone).where(Salon.id == salon_id))
        ).one_or_none()
        salon_name, zone = (salon.name, salon_zone(salon.timezone)) if salon else (None, salon_zone(None))
        service = (
            await self.db.execute(select(Service).where(Service.id == service_id))
        ).scalar_one_or_none()
        return salon_name or "Your salon", zone, service

    async def _deliver(
        self,
        *,
        salon_id: UUID,
        salon_name: str,
        zone: ZoneInfo,
        service_name: str,
        entry_id: UUID,
        customer_name: str,
        phone: str | None,
        email: str | None,
        slot_start: datetime,
        token: str,
        expires_at: datetime,
        sms_key: str,
        reminder: bool,
        log_extra: dict[str, Any],
    ) -> tuple[list[str], str | None, str | None]:
        """
        Send the claim links, SMS first, then email.

        Returns:
            (channels delivered, sms error, email error); an error is only set
            for a channel that was attempted and failed
        """
        accept_url = build_claim_url("accept", token)
        decline_url = build_claim_url("decline", token)
        local_start = utc_to_local(slot_start, zone)
        when = f"{local_start:%a %d %b} at {local_start:%H:%M}"
        minutes_left = max(1, int((expires_at - utcnow()).total_seconds() // 60))

        delivered: list[str] = []
        sms_error = None
        email_error = None

        if phone:
            prefix = "Reminder: your" if reminder else "A"
            body = (
                f"{salon_name}: {prefix} {service_name} slot on {when} is available. "
                f"Accept: {accept_url} Decline: {decline_url} "
                f"(link expires in {minutes_left} min)"
            )
            try:
                sms_result = await self.sms_service.send_sms(
                    recipient=phone,
                    body=body,
                    idempotency_key=sms_key,
                    salon_id=salon_id,
                    metadata={"entry_id": str(entry_id), "reminder": reminder},
                )
                if sms_result.allowed and sms_result.status == "sent":
                    delivered.append("sms")
                else:
                    sms_error = sms_result.error or f"SMS {sms_result.status}"
            except Exception as exc:
                sms_error = str(exc) or exc.__class__.__name__
            if sms_error:
                metrics_collector.record_notification_failure("sms")
                logger.warning("Claim-link SMS failed", extra={**log_extra, "error": sms_error})

        if email:
            if "sms" in delivered:
                channel_note = "We've also sent this by SMS."
            elif phone:
                channel_note = "We could not deliver SMS, so we're sending this by email."
            else:
                channel_note = ""
            subject = (
                f"Reminder: your {service_name} slot offer expires soon"
                if reminder
                else f"A {service_name} slot opened up at {salon_name}"
            )
            body = (
                f"<p>Hi {html.escape(customer_name)},</p>"
                f"<p>A {html.escape(service_name)} slot on {when} is available for you at "
                f"{html.escape(salon_name)}. The offer expires in {minutes_left} minutes.</p>"
                f'<p><a href="{html.escape(accept_url)}">Accept</a> or '
                f'<a href="{html.escape(decline_url)}">Decline</a></p>'
                + (f"<p>{channel_note}</p>" if channel_note else "")
            )
            try:
                await self.email_service.send_email(
                    to=email,
                    subject=subject,
                    html=body,
                    metadata={"entry_id": str(entry_id), "reminder": reminder},
                )
                delivered.append("email")
            except Exception as exc:
                email_error = str(exc) or exc.__class__.__name__
                metrics_collector.record_notification_failure("email")
                logger.warning("Claim-link email failed", extra={**log_extra, "error": email_error})

        return delivered, sms_error, email_error

    async def create_and_send_offer(
        self,
        salon_id: UUID,
        service_id: UUID,
        slot_date: date,
        entry: WaitlistEntry,
        slot_start: datetime,
        slot_end: datetime | None = None,
        employee_id: UUID | None = None,
        trigger: OfferTrigger = OfferTrigger.MANUAL_NOTIFY,
        from_status: WaitlistStatus = WaitlistStatus.WAITING,
        now: datetime | None = None,
    ) -> OfferResult:
        """
        Create a pending offer for one entry and send the claim link.

        The offer row is inserted before the entry is moved to ``notified``; the
        partial unique index on pending offers makes the insert the point where
        concurrent triggers for the same slot are decided.

        Returns:
            OfferResult; contention and ineligibility are reported, not raised
        """
        now = to_naive_utc(now) if now else utcnow()
        slot_start = to_naive_utc(slot_start)
        trigger_value = OfferTrigger(trigger).value
        from_value = WaitlistStatus(from_status).value

        entry_id = entry.id
        employee_id = employee_id or entry.employee_id
        phone = entry.customer_phone
        email = entry.customer_email
        customer_name = entry.customer_name

        log_extra = {
            "salon_id": str(salon_id),
            "entry_id": str(entry_id),
            "employee_id": str(employee_id) if employee_id else None,
            "slot_start": slot_start.isoformat(),
            "trigger": trigger_value,
        }

        if employee_id is None:
            logger.warning("Offer not created - no employee for slot", extra=log_extra)
            return await self._result(entry_id, OfferOutcome.MISSING_EMPLOYEE, error=MISSING_EMPLOYEE_ERROR)

        if not phone and not email:
            logger.warning("Offer not created - customer has no contact", extra=log_extra)
            return await self._result(entry_id, OfferOutcome.MISSING_CONTACT, error=MISSING_CONTACT_ERROR)

        if await self.get_pending_offer_for_slot(salon_id, employee_id, slot_start):
            metrics_collector.record_offer_contention("pending_offer")
            logger.info("Offer not created - slot already offered", extra=log_extra)
            return await self._result(entry_id, OfferOutcome.OFFER_EXISTS, error=OFFER_EXISTS_ERROR)

        salon_name, zone, service = await self._names(salon_id, service_id)
        service_name = service.name if service else "appointment"
        if slot_end is None:
            duration = service.duration_minutes if service else 30
            slot_end = slot_start + timedelta(minutes=duration)
        slot_end = to_naive_utc(slot_end)

        previous_attempts = (
            await self.db.execute(
                select(func.count())
                .select_from(WaitlistOffer)
                .where(
                    WaitlistOffer.waitlist_entry_id == entry_id,
                    WaitlistOffer.slot_start == slot_start,
                )
            )
        ).scalar_one()
        attempt_no = previous_attempts + 1

        policy = await self.policy_service.resolve_waitlist_policy(salon_id, service_id)
        expires_at = now + timedelta(minutes=policy.claim_expiry_minutes)

        token = generate_claim_token()
        offer = WaitlistOffer(
            salon_id=salon_id,
            waitlist_entry_id=entry_id,
            service_id=service_id,
            employee_id=employee_id,
            slot_date=slot_date,
            slot_start=slot_start,
            slot_end=slot_end,
            token_hash=hash_claim_token(token),
            token_expires_at=expires_at,
            status=OfferStatus.PENDING.value,
            attempt_no=attempt_no,
            trigger=trigger_value,
        )

        try:
            self.db.add(offer)
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            metrics_collector.record_offer_contention("unique_index")
            logger.info("Offer not created - lost race for slot", extra=log_extra)
            return await self._result(entry_id, OfferOutcome.OFFER_EXISTS, error=OFFER_EXISTS_ERROR)

        offer_id = offer.id

        moved = await self.db.execute(
            update(WaitlistEntry)
            .where(WaitlistEntry.id == entry_id, WaitlistEntry.status == from_value)
            .values(
                status=WaitlistStatus.NOTIFIED.value,
                notified_at=now,
                expires_at=expires_at,
                updated_at=now,
            )
        )
        if moved.rowcount == 0:
            await self.db.rollback()
            metrics_collector.record_offer_contention("entry_not_eligible")
            logger.info("Offer not created - entry no longer eligible", extra=log_extra)
            return await self._result(entry_id, OfferOutcome.ENTRY_NOT_ELIGIBLE, error=ENTRY_NOT_ELIGIBLE_ERROR)

        await self.db.commit()

        log_extra.update({"offer_id": str(offer_id), "attempt_no": attempt_no})
        logger.info("Waitlist offer created", extra=log_extra)

        delivered, sms_error, email_error = await self._deliver(
            salon_id=salon_id,
            salon_name=salon_name,
            zone=zone,
            service_name=service_name,
            entry_id=entry_id,
            customer_name=customer_name,
            phone=phone,
            email=email,
            slot_start=slot_start,
            token=token,
            expires_at=expires_at,
            sms_key=f"waitlist-offer-{entry_id}-{slot_start.isoformat()}-attempt-{attempt_no}",
            reminder=False,
            log_extra=log_extra,
        )
        notified = bool(delivered)

        if not notified:
            await self.db.execute(
                update(WaitlistOffer)
                .where(WaitlistOffer.id == offer_id, WaitlistOffer.status == OfferStatus.PENDING.value)
                .values(
                    status=OfferStatus.NOTIFICATION_FAILED.value,
                    last_error=DELIVERY_FAILED_ERROR,
                    updated_at=utcnow(),
                )
            )

        record_lifecycle_event(
            self.db,
            entry_id=entry_id,
            salon_id=salon_id,
            from_status=from_value,
            to_status=WaitlistStatus.NOTIFIED.value,
            reason="offer_created",
            metadata={
                "offer_id": str(offer_id),
                "channels": delivered,
                "slot_start": slot_start.isoformat(),
                "slot_end": slot_end.isoformat(),
                "employee_id": str(employee_id),
                "trigger": trigger_value,
                "attempt_no": attempt_no,
                "delivery_failed": not notified,
            },
        )
        await self.db.commit()

        offer_status = OfferStatus.PENDING if notified else OfferStatus.NOTIFICATION_FAILED
        metrics_collector.record_offer_created(trigger_value, offer_status.value)

        warning = None
        if sms_error and email_error:
            warning = f"SMS and email claim-link delivery failed: {sms_error}; {email_error}"
        elif sms_error and "email" in delivered:
            warning = f"SMS claim-link failed, email was sent instead: {sms_error}"
        elif email_error and "sms" in delivered:
            warning = f"Email claim-link failed, SMS was sent: {email_error}"

        logger.info(
            "Waitlist offer delivery finished",
            extra={**log_extra, "channels": delivered, "notified": notified, "has_warning": warning is not None}
        )

        return await self._result(
            entry_id,
            OfferOutcome.SENT if notified else OfferOutcome.NOTIFICATION_FAILED,
            notified=notified,
            offer_id=offer_id,
            error=None if notified else DELIVERY_FAILED_ERROR,
            warning=warning,
        )

    async def send_due_reminders(self, now: datetime | None = None, batch_size: int = 100) -> int:
        """
        Remind customers whose pending offer expires soon.

        Each reminder carries a fresh token; the stored hash is rotated with a
        conditional update so the previous link stops working and a concurrent
        sweep cannot remind twice.

        Returns:
            Number of offers reminded
        """
        now = to_naive_utc(now) if now else utcnow()
        lead = timedelta(minutes=settings.offer_reminder_lead_minutes)

        result = await self.db.execute(
            select(WaitlistOffer, WaitlistEntry)
            .join(WaitlistEntry, WaitlistEntry.id == WaitlistOffer.waitlist_entry_id)
            .where(
                WaitlistOffer.status == OfferStatus.PENDING.value,
                WaitlistOffer.reminder_sent_at.is_(None),
                WaitlistOffer.token_expires_at > now,
                WaitlistOffer.token_expires_at <= now + lead,
            )
            .order_by(WaitlistOffer.token_expires_at)
            .limit(batch_size)
        )
        due = [
            {
                "offer_id": offer.id,
                "old_hash": offer.token_hash,
                "salon_id": offer.salon_id,
                "service_id": offer.service_id,
                "slot_start": offer.slot_start,
                "expires_at": offer.token_expires_at,
                "attempt_no": offer.attempt_no,
                "entry_id": entry.id,
                "entry_status": entry.status,
                "customer_name": entry.customer_name,
                "phone": entry.customer_phone,
                "email": entry.customer_email,
            }
            for offer, entry in result.all()
        ]

        reminded = 0
        for item in due:
            try:
                sent = await self._remind_one(item, now)
            except Exception as e:
                await self.db.rollback()
                metrics_collector.record_sweep_error("offer_reminder")
                logger.warning(
                    "Failed sending waitlist offer reminder",
                    extra={"offer_id": str(item["offer_id"]), "error": str(e)},
                    exc_info=True
                )
                continue
            reminded += sent

        return reminded

    async def _remind_one(self, item: dict[str, Any], now: datetime) -> bool:
        """Rotate one offer's token and send the reminder; False when another sweep got there first."""
        token = generate_claim_token()
        rotated = await self.db.execute(
            update(WaitlistOffer)
            .where(
                WaitlistOffer.id == item["offer_id"],
                WaitlistOffer.status == OfferStatus.PENDING.value,
                WaitlistOffer.reminder_sent_at.is_(None),
                WaitlistOffer.token_hash == item["old_hash"],
            )
            .values(token_hash=hash_claim_token(token), reminder_sent_at=now, updated_at=now)
        )
        if rotated.rowcount == 0:
            await self.db.rollback()
            return False
        await self.db.commit()

        log_extra = {
            "offer_id": str(item["offer_id"]),
            "entry_id": str(item["entry_id"]),
            "salon_id": str(item["salon_id"]),
        }
        salon_name, zone, service = await self._names(item["salon_id"], item["service_id"])
        delivered, _, _ = await self._deliver(
            salon_id=item["salon_id"],
            salon_name=salon_name,
            zone=zone,
            service_name=service.name if service else "appointment",
            entry_id=item["entry_id"],
            customer_name=item["customer_name"],
            phone=item["phone"],
            email=item["email"],
            slot_start=item["slot_start"],
            token=token,
            expires_at=item["expires_at"],
            sms_key=(
                f"waitlist-offer-{item['entry_id']}-{item['slot_start'].isoformat()}"
                f"-attempt-{item['attempt_no']}-reminder"
            ),
            reminder=True,
            log_extra=log_extra,
        )

        record_lifecycle_event(
            self.db,
            entry_id=item["entry_id"],
            salon_id=item["salon_id"],
            from_status=item["entry_status"],
            to_status=item["entry_status"],
            reason="offer_reminder_sent",
            metadata={"offer_id": str(item["offer_id"]), "channels": delivered},
        )
        await self.db.commit()

        logger.info("Waitlist offer reminder sent", extra={**log_extra, "channels": delivered})
        return True
