"""Models module exporting all database models."""

from .booking import ACTIVE_BOOKING_STATUSES, Booking, BookingStatus
from .idempotency import IdempotencyRecord
from .notification import SmsDelivery
from .salon import Employee, Salon, Service, employee_services
from .schedule import EmployeeBreak, OpeningHours, Shift, TimeBlock
from .waitlist import (
    OfferStatus,
    OfferTrigger,
    WaitlistEntry,
    WaitlistLifecycleEvent,
    WaitlistOffer,
    WaitlistPolicy,
    WaitlistStatus,
)

__all__ = [
    # Tenant entities
    "Salon",
    "Employee",
    "Service",
    "employee_services",

    # Calendar inputs
    "OpeningHours",
    "Shift",
    "EmployeeBreak",
    "TimeBlock",

    # Booking entity
    "Booking",
    "BookingStatus",
    "ACTIVE_BOOKING_STATUSES",

    # Waitlist entities
    "WaitlistEntry",
    "WaitlistStatus",
    "WaitlistOffer",
    "OfferStatus",
    "OfferTrigger",
    "WaitlistLifecycleEvent",
    "WaitlistPolicy",

    # Delivery and request bookkeeping
    "SmsDelivery",
    "IdempotencyRecord",
]
