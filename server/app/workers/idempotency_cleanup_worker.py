"""Background worker that purges expired idempotency records."""

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..services.idempotency_service import IdempotencyService
from .base import BaseWorker


class IdempotencyCleanupWorker(BaseWorker):
    """Deletes replay records once their TTL has passed."""

    def __init__(self, interval_seconds: int | None = None, **kwargs):
        super().__init__(
            name="idempotency_cleanup",
            interval_seconds=interval_seconds or settings.idempotency_cleanup_interval_seconds,
            **kwargs
        )

    async def process(self, db: AsyncSession) -> dict[str, int]:
        return {"purged_records": await IdempotencyService(db).purge_expired()}
