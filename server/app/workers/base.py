"""Base class for periodic background sweeps."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import async_session_factory

logger = logging.getLogger(__name__)


class BaseWorker(ABC):
    """
    Runs ``process`` on a fixed interval until stopped.

    Each iteration gets its own session from ``session_factory`` so a failed
    sweep never leaves a half-finished transaction behind for the next one.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: int = 60,
        session_factory: Callable[[], AsyncSession] = async_session_factory,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.session_factory = session_factory
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    @abstractmethod
    async def process(self, db: AsyncSession) -> dict[str, int]:
        """Run one sweep and return counters for the iteration log line."""

    async def run_once(self) -> dict[str, int]:
        """Run a single iteration in a fresh session."""
        async with self.session_factory() as db:
            try:
                return await self.process(db)
            except Exception:
                await db.rollback()
                raise

    async def start(self) -> None:
        if self._running:
            logger.warning("Worker already running", extra={"worker": self.name})
            return

        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"worker:{self.name}")
        logger.info(
            "Worker started",
            extra={"worker": self.name, "interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Worker stopped", extra={"worker": self.name})

    async def _run(self) -> None:
        while self._running:
            started = time.monotonic()
            try:
                counters = await self.run_once()
                duration = time.monotonic() - started
                if any(counters.values()):
                    logger.info(
                        "Worker iteration completed",
                        extra={"worker": self.name, "duration_seconds": round(duration, 3), **counters}
                    )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    "Worker iteration failed",
                    exc_info=True,
                    extra={"worker": self.name, "error": str(e)}
                )
                duration = time.monotonic() - started

            await asyncio.sleep(max(0.0, self.interval_seconds - duration))
