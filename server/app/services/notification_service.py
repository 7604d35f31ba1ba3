"""SMS (Twilio) and email (Resend) senders used for claim-link delivery."""

import asyncio
import logging
import re
from typing import Any
from uuid import UUID

import resend
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from ..core.config import settings
from ..models.notification import SmsDelivery

logger = logging.getLogger(__name__)

SMS_MAX_LENGTH = 1600


class SmsStatus:
    """Values stored on SmsDelivery.status and returned in SmsResult."""
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    BLOCKED = "blocked"


class SmsResult(BaseModel):
    """Outcome of one SMS send request."""

    allowed: bool
    status: str
    error: str | None = None
    duplicate: bool = False
    provider_sid: str | None = None

    @property
    def delivered(self) -> bool:
        return self.allowed and self.status == SmsStatus.SENT


class EmailDeliveryError(Exception):
    """Raised when an email could not be handed to the provider."""


def _mask_phone(number: str) -> str:
    return f"***{number[-4:]}" if number else ""


class SmsService:
    """
    Sends SMS through Twilio with at-most-once delivery per idempotency key.

    The key is claimed by inserting an SmsDelivery row before the provider is
    called; a second request with the same key finds the row and is reported
    as a duplicate instead of being sent again.
    """

    def __init__(self, db: AsyncSession, client: Client | None = None):
        self.db = db
        self.from_number = settings.twilio_phone_number

        if client is not None:
            self.client = client
            self.enabled = True
        elif (
            settings.sms_enabled
            and settings.twilio_account_sid
            and settings.twilio_auth_token
            and settings.twilio_phone_number
        ):
            self.client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
            self.enabled = True
        else:
            self.client = None
            self.enabled = False
            logger.info("SMS service disabled - Twilio credentials not configured")

    def _send_sync(self, to_number: str, body: str) -> str:
        message = self.client.messages.create(body=body, to=to_number, from_=self.from_number)
        return message.sid

    async def _existing(self, idempotency_key: str) -> SmsDelivery | None:
        result = await self.db.execute(
            select(SmsDelivery).where(SmsDelivery.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def send_sms(
        self,
        recipient: str,
        body: str,
        idempotency_key: str,
        salon_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SmsResult:
        """
        Send one SMS unless the idempotency key was already used.

        Returns:
            SmsResult; provider failures are reported with status "failed"
        """
        log_extra = {
            "idempotency_key": idempotency_key,
            "recipient": _mask_phone(recipient),
            "salon_id": str(salon_id) if salon_id else None,
            **(metadata or {}),
        }

        if not self.enabled:
            logger.debug("SMS disabled, not sending", extra=log_extra)
            return SmsResult(allowed=False, status=SmsStatus.BLOCKED, error="SMS delivery is not configured")

        existing = await self._existing(idempotency_key)
        if existing is not None:
            logger.info("Duplicate SMS request ignored", extra={**log_extra, "previous_status": existing.status})
            return SmsResult(
                allowed=True,
                status=existing.status,
                error=existing.error,
                duplicate=True,
                provider_sid=existing.provider_sid,
            )

        delivery = SmsDelivery(
            idempotency_key=idempotency_key,
            salon_id=salon_id,
            recipient=recipient,
            status=SmsStatus.SENDING,
        )
        try:
            self.db.add(delivery)
            await self.db.commit()
        except IntegrityError:
            # A concurrent request claimed the key first
            await self.db.rollback()
            logger.info("Duplicate SMS request ignored (race condition)", extra=log_extra)
            existing = await self._existing(idempotency_key)
            return SmsResult(
                allowed=True,
                status=existing.status if existing else SmsStatus.SENDING,
                duplicate=True,
            )

        if len(body) > SMS_MAX_LENGTH:
            body = body[:SMS_MAX_LENGTH - 3] + "..."

        try:
            sid = await asyncio.to_thread(self._send_sync, recipient, body)
        except TwilioRestException as exc:
            error = f"Twilio error {exc.code}: {exc.msg}"
            await self._finish(delivery.id, SmsStatus.FAILED, error=error)
            logger.warning("SMS delivery failed", extra={**log_extra, "error": error})
            return SmsResult(allowed=True, status=SmsStatus.FAILED, error=error)
        except TwilioException as exc:
            error = f"Twilio error: {exc}"
            await self._finish(delivery.id, SmsStatus.FAILED, error=error)
            logger.warning("SMS delivery failed", extra={**log_extra, "error": error})
            return SmsResult(allowed=True, status=SmsStatus.FAILED, error=error)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            await self._finish(delivery.id, SmsStatus.FAILED, error=error)
            logger.error("SMS delivery failed unexpectedly", extra={**log_extra, "error": error}, exc_info=True)
            return SmsResult(allowed=True, status=SmsStatus.FAILED, error=error)

        await self._finish(delivery.id, SmsStatus.SENT, provider_sid=sid)
        logger.info("SMS sent", extra={**log_extra, "provider_sid": sid})
        return SmsResult(allowed=True, status=SmsStatus.SENT, provider_sid=sid)

    async def _finish(
        self, delivery_id: UUID, status: str, provider_sid: str | None = None, error: str | None = None
    ) -> None:
        await self.db.execute(
            update(SmsDelivery)
            .where(SmsDelivery.id == delivery_id)
            .values(status=status, provider_sid=provider_sid, error=error)
        )
        await self.db.commit()


class EmailService:
    """Sends transactional email through Resend."""

    def __init__(self, sender: str | None = None):
        self.from_email = sender or settings.email_from
        self.enabled = bool(settings.email_enabled and settings.resend_api_key)
        if self.enabled:
            resend.api_key = settings.resend_api_key
        else:
            logger.info("Email service disabled - Resend API key not configured")

    @staticmethod
    def _html_to_text(html_content: str) -> str:
        text = re.sub(r"<[^>]+>", "", html_content)
        return re.sub(r"\s+", " ", text).strip()

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        metadata: dict[str, Any] | None = None,
    ) -> str | None:
        """
        Send one email.

        Returns:
            Provider message id

        Raises:
            EmailDeliveryError: If email is disabled or the provider rejects the message
        """
        if not self.enabled:
            raise EmailDeliveryError("Email delivery is not configured")

        email_data = {
            "from": self.from_email,
            "to": [to],
            "subject": subject,
            "html": html,
            "text": self._html_to_text(html),
        }

        try:
            response = await asyncio.to_thread(resend.Emails.send, email_data)
        except Exception as exc:
            logger.warning(
                "Email delivery failed",
                extra={"subject": subject, "error": str(exc), **(metadata or {})},
            )
            raise EmailDeliveryError(f"Email sending failed: {exc}") from exc

        message_id = response.get("id") if isinstance(response, dict) else None
        logger.info("Email sent", extra={"subject": subject, "message_id": message_id, **(metadata or {})})
        return message_id
