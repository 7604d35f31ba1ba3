"""Waitlist policy resolution."""

import logging
from datetime import timedelta
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..models.waitlist import WaitlistPolicy

logger = logging.getLogger(__name__)


class ResolvedWaitlistPolicy(BaseModel):
    """Effective rules for one salon and service."""

    claim_expiry_minutes: int
    requeue_on_decline: bool = False
    requeue_on_expiry: bool = False
    cooldown_minutes: int = 60
    passive_decline_threshold: int = 3
    passive_cooldown_minutes: int = 10080

    def cooldown_after_timeout(self, decline_count: int) -> timedelta:
        """Pause for an entry that has now let ``decline_count`` offers run out."""
        if decline_count >= self.passive_decline_threshold:
            return timedelta(minutes=self.passive_cooldown_minutes)
        return timedelta(minutes=self.cooldown_minutes)


def _or_default(value: int | None, default: int) -> int:
    return default if value is None else value


class PolicyService:
    """Resolves waitlist policy: service-specific row, then salon default, then settings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve_waitlist_policy(self, salon_id: UUID, service_id: UUID | None) -> ResolvedWaitlistPolicy:
        stmt = select(WaitlistPolicy).where(WaitlistPolicy.salon_id == salon_id)
        if service_id is not None:
            stmt = stmt.where(
                or_(WaitlistPolicy.service_id == service_id, WaitlistPolicy.service_id.is_(None))
            )
        else:
            stmt = stmt.where(WaitlistPolicy.service_id.is_(None))

        rows = list((await self.db.execute(stmt)).scalars())
        # Service-specific row wins over the salon default
        rows.sort(key=lambda p: p.service_id is None)
        policy = rows[0] if rows else None

        defaults = {
            "cooldown_minutes": settings.waitlist_cooldown_minutes,
            "passive_decline_threshold": settings.waitlist_passive_decline_threshold,
            "passive_cooldown_minutes": settings.waitlist_passive_cooldown_minutes,
        }

        if policy is None:
            return ResolvedWaitlistPolicy(claim_expiry_minutes=settings.default_claim_expiry_minutes, **defaults)

        return ResolvedWaitlistPolicy(
            claim_expiry_minutes=policy.claim_expiry_minutes or settings.default_claim_expiry_minutes,
            requeue_on_decline=policy.requeue_on_decline,
            requeue_on_expiry=policy.requeue_on_expiry,
            cooldown_minutes=_or_default(policy.cooldown_minutes, defaults["cooldown_minutes"]),
            passive_decline_threshold=_or_default(
                policy.passive_decline_threshold, defaults["passive_decline_threshold"]
            ),
            passive_cooldown_minutes=_or_default(
                policy.passive_cooldown_minutes, defaults["passive_cooldown_minutes"]
            ),
        )
