"""Service layer package."""

from .booking_service import BookingService
from .claim_service import ClaimService
from .conflict_service import ConflictService
from .idempotency_service import IdempotencyService
from .notification_service import EmailDeliveryError, EmailService, SmsResult, SmsService
from .offer_service import OfferService
from .policy_service import PolicyService, ResolvedWaitlistPolicy
from .schedule_service import ScheduleService
from .slot_service import SlotService
from .waitlist_service import WaitlistService

__all__ = [
    "BookingService",
    "ClaimService",
    "ConflictService",
    "EmailDeliveryError",
    "EmailService",
    "IdempotencyService",
    "OfferService",
    "PolicyService",
    "ResolvedWaitlistPolicy",
    "ScheduleService",
    "SlotService",
    "SmsResult",
    "SmsService",
    "WaitlistService",
]
