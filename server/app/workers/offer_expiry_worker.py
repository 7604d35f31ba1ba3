"""Background worker that expires overdue waitlist offers."""

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..services.claim_service import ClaimService
from .base import BaseWorker


class OfferExpiryWorker(BaseWorker):
    """
    Expires pending offers past their deadline, releases stale entries and
    returns entries whose cooldown ran out to the queue.

    When ``chain_offers_on_expiry`` is on, each expired slot is offered to
    the next eligible entry in the same pass.
    """

    def __init__(self, interval_seconds: int | None = None, batch_size: int = 100, **kwargs):
        super().__init__(
            name="offer_expiry",
            interval_seconds=interval_seconds or settings.offer_expiry_interval_seconds,
            **kwargs
        )
        self.batch_size = batch_size

    async def process(self, db: AsyncSession) -> dict[str, int]:
        claim_service = ClaimService(db)
        expired, chained = await claim_service.expire_offers(batch_size=self.batch_size)
        released = await claim_service.release_stale_entries(batch_size=self.batch_size)
        reactivated = await claim_service.reactivate_cooldown_entries(batch_size=self.batch_size)
        return {
            "expired_offers": expired,
            "chained_offers": chained,
            "released_entries": released,
            "reactivated_entries": reactivated,
        }
