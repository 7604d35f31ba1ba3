"""Worker manager for the offer sweeps."""

import asyncio
import logging

from .base import BaseWorker
from .idempotency_cleanup_worker import IdempotencyCleanupWorker
from .offer_expiry_worker import OfferExpiryWorker
from .offer_reminder_worker import OfferReminderWorker

logger = logging.getLogger(__name__)


class WorkerManager:
    """Starts and stops the background workers together."""

    def __init__(self, workers: list[BaseWorker] | None = None):
        if workers is None:
            workers = [OfferExpiryWorker(), OfferReminderWorker(), IdempotencyCleanupWorker()]
        self.workers: dict[str, BaseWorker] = {worker.name: worker for worker in workers}

    async def start_all(self) -> None:
        for worker in self.workers.values():
            await worker.start()
        logger.info("Background workers started", extra={"workers": list(self.workers)})

    async def stop_all(self) -> None:
        names = list(self.workers)
        results = await asyncio.gather(
            *(worker.stop() for worker in self.workers.values()),
            return_exceptions=True
        )
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.error("Error stopping worker", extra={"worker": name, "error": str(result)})

    def get_worker(self, name: str) -> BaseWorker:
        return self.workers[name]

    def get_worker_status(self) -> dict[str, bool]:
        return {name: worker.running for name, worker in self.workers.items()}


worker_manager = WorkerManager()
