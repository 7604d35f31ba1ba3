"""Background worker that sends reminders for offers about to expire."""

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..services.offer_service import OfferService
from .base import BaseWorker


class OfferReminderWorker(BaseWorker):
    """Sends one reminder per pending offer inside the reminder lead time."""

    def __init__(self, interval_seconds: int | None = None, batch_size: int = 100, **kwargs):
        super().__init__(
            name="offer_reminder",
            interval_seconds=interval_seconds or settings.offer_reminder_interval_seconds,
            **kwargs
        )
        self.batch_size = batch_size

    async def process(self, db: AsyncSession) -> dict[str, int]:
        sent = await OfferService(db).send_due_reminders(batch_size=self.batch_size)
        return {"reminders_sent": sent}
