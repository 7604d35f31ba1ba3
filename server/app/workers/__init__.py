"""Background sweeps for waitlist offers and request bookkeeping."""

from .idempotency_cleanup_worker import IdempotencyCleanupWorker
from .offer_expiry_worker import OfferExpiryWorker
from .offer_reminder_worker import OfferReminderWorker

__all__ = ["IdempotencyCleanupWorker", "OfferExpiryWorker", "OfferReminderWorker"]
