"""Replay cache for mutating RPCs called with an Idempotency-Key."""

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, NamedTuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import utcnow
from ..core.exceptions import PROBLEM_BASE_URI, ProblemDetailsException
from ..models.idempotency import IdempotencyRecord

logger = logging.getLogger(__name__)


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def fingerprint(request_body: dict[str, Any]) -> str:
    """SHA-256 of the request body with keys sorted, so field order never matters."""
    return hashlib.sha256(_canonical_json(request_body).encode("utf-8")).hexdigest()


class IdempotencyMismatchError(ProblemDetailsException):
    """The key was first used with a different request body."""

    def __init__(self, idempotency_key: str, method: str):
        super().__init__(
            status_code=422,
            title="Idempotency Key Mismatch",
            detail=f"Idempotency key '{idempotency_key}' was already used for {method} with a different body",
            type_uri=f"{PROBLEM_BASE_URI}/idempotency-key-mismatch",
            extensions={
                "code": "IDEMPOTENCY_KEY_MISMATCH",
                "retryable": False,
                "idempotency_key": idempotency_key,
                "method": method,
            },
        )


class StoredResponse(NamedTuple):
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str]


class IdempotencyService:
    """
    Remembers the first response per ``(Idempotency-Key, method)``.

    A booking cancellation retried by the front desk must not send the freed
    slot to a second waitlist customer, so the stored response is replayed
    instead of running the operation again.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def lookup(
        self,
        idempotency_key: str,
        method: str,
        request_body: dict[str, Any],
        now: datetime | None = None,
    ) -> StoredResponse | None:
        """
        Stored response for the key, or None for a first attempt.

        Raises:
            IdempotencyMismatchError: If the key was used with another body
        """
        now = now or utcnow()
        result = await self.db.execute(
            select(IdempotencyRecord).where(
                IdempotencyRecord.idempotency_key == idempotency_key,
                IdempotencyRecord.method == method,
                IdempotencyRecord.expires_at > now,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None

        if record.request_body_hash != fingerprint(request_body):
            logger.warning(
                "Idempotency key reused with different body",
                extra={"idempotency_key": idempotency_key, "method": method}
            )
            raise IdempotencyMismatchError(idempotency_key, method)

        logger.info(
            "Replaying stored response",
            extra={
                "idempotency_key": idempotency_key,
                "method": method,
                "status_code": record.response_status_code,
            }
        )
        headers = json.loads(record.response_headers) if record.response_headers else {}
        return StoredResponse(record.response_status_code, json.loads(record.response_body), headers)

    async def remember(
        self,
        idempotency_key: str,
        method: str,
        request_body: dict[str, Any],
        status_code: int,
        body: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> None:
        """
        Store the response of a first attempt and commit.

        Of two concurrent first attempts only one record survives; the loser
        keeps its own response and logs the collision.
        """
        record = IdempotencyRecord(
            idempotency_key=idempotency_key,
            method=method,
            request_body_hash=fingerprint(request_body),
            response_status_code=status_code,
            response_body=_canonical_json(body),
            response_headers=_canonical_json(headers) if headers else None,
            expires_at=utcnow() + timedelta(hours=settings.idempotency_ttl_hours),
        )

        try:
            self.db.add(record)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                "Concurrent request already stored this key",
                extra={"idempotency_key": idempotency_key, "method": method}
            )

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete records past their TTL; returns how many went."""
        result = await self.db.execute(
            delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= (now or utcnow()))
        )
        await self.db.commit()
        return result.rowcount
