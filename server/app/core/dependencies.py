"""FastAPI dependencies for idempotency keys and notification senders."""

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_db
from .exceptions import ValidationError
from ..services.notification_service import EmailService, SmsService
from ..services.offer_service import OfferService


async def get_idempotency_key(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
) -> Optional[str]:
    """
    Extract and validate the optional Idempotency-Key header.

    Raises:
        ValidationError: If the key is longer than the stored column allows
    """
    if not idempotency_key:
        return None

    if len(idempotency_key) > 255:
        raise ValidationError(
            detail="Idempotency key must be between 1 and 255 characters",
            errors={"Idempotency-Key": "too long"},
        )

    return idempotency_key


async def get_sms_service(db: AsyncSession = Depends(get_db)) -> SmsService:
    """SMS sender bound to the request session."""
    return SmsService(db)


async def get_email_service() -> EmailService:
    """Email sender configured from settings."""
    return EmailService()


async def get_offer_service(
    db: AsyncSession = Depends(get_db),
    sms_service: SmsService = Depends(get_sms_service),
    email_service: EmailService = Depends(get_email_service),
) -> OfferService:
    """Offer coordinator with injectable notification senders."""
    return OfferService(db, sms_service=sms_service, email_service=email_service)


DatabaseSession = Depends(get_db)
IdempotencyKey = Depends(get_idempotency_key)
OfferServiceDependency = Depends(get_offer_service)
