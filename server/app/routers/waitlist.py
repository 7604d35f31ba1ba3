"""Waitlist router for waitlist operations."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import get_db
from ..core.dependencies import IdempotencyKey, OfferServiceDependency
from ..core.exceptions import ProblemDetailsException
from ..schemas.common import PROBLEM_RESPONSES
from ..schemas.waitlist import (
    CancelWaitlistRequest,
    JoinWaitlistRequest,
    ListWaitlistRequest,
    ListWaitlistResponse,
    NotifyWaitlistRequest,
    OfferResult,
    SweepRequest,
    SweepResponse,
    WaitlistEntry,
)
from ..services.claim_service import ClaimService
from ..services.offer_service import OfferService
from ..services.waitlist_service import WaitlistService
from .idempotent import handle_idempotent_operation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/waitlist", tags=["waitlist"], responses=PROBLEM_RESPONSES)

DB_DEPENDENCY = Depends(get_db)


def _convert_waitlist_entry_to_schema(entry_model) -> WaitlistEntry:
    """Convert waitlist entry model to schema."""
    return WaitlistEntry.model_validate(entry_model)


@router.post("/join", response_model=WaitlistEntry)
async def join_waitlist(
    request: JoinWaitlistRequest,
    db: AsyncSession = DB_DEPENDENCY
) -> JSONResponse:
    """Join a salon's waitlist for a service on a given day."""
    waitlist_service = WaitlistService(db)

    try:
        entry = await waitlist_service.join_waitlist(request)
        response_data = _convert_waitlist_entry_to_schema(entry)

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        # Re-raise Problem Details exceptions as-is
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in waitlist join",
            extra={
                "salon_id": str(request.salon_id),
                "service_id": str(request.service_id),
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/list", response_model=ListWaitlistResponse)
async def list_waitlist(
    request: ListWaitlistRequest,
    db: AsyncSession = DB_DEPENDENCY
) -> JSONResponse:
    """List waitlist entries, oldest first."""
    waitlist_service = WaitlistService(db)

    try:
        entries = await waitlist_service.list_entries(
            salon_id=request.salon_id,
            status=request.status,
            preferred_date=request.preferred_date,
        )
        response_data = ListWaitlistResponse(
            items=[_convert_waitlist_entry_to_schema(e) for e in entries]
        )

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in waitlist listing",
            extra={"salon_id": str(request.salon_id), "error": str(e)},
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/cancel", response_model=WaitlistEntry)
async def cancel_waitlist_entry(
    request: CancelWaitlistRequest,
    db: AsyncSession = DB_DEPENDENCY,
    idempotency_key: str | None = IdempotencyKey
) -> JSONResponse:
    """
    Remove a customer from the waitlist.

    This operation is idempotent based on the Idempotency-Key header.
    """
    waitlist_service = WaitlistService(db)

    async def operation():
        entry = await waitlist_service.cancel_entry(request.salon_id, request.entry_id)
        return 200, _convert_waitlist_entry_to_schema(entry).model_dump(mode="json")

    try:
        return await handle_idempotent_operation(
            method="waitlist/cancel",
            idempotency_key=idempotency_key,
            request_body=request.model_dump(mode="json"),
            operation_func=operation,
            db=db
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in waitlist cancellation",
            extra={
                "entry_id": str(request.entry_id),
                "idempotency_key": idempotency_key,
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/notify", response_model=OfferResult)
async def notify_waitlist(
    request: NotifyWaitlistRequest,
    db: AsyncSession = DB_DEPENDENCY,
    offer_service: OfferService = OfferServiceDependency,
    idempotency_key: str | None = IdempotencyKey
) -> JSONResponse:
    """
    Offer a slot to one waitlist entry and send the claim link.

    Contention and delivery failures are reported in the body, not as errors.
    This operation is idempotent based on the Idempotency-Key header.
    """
    waitlist_service = WaitlistService(db, offer_service=offer_service)

    async def operation():
        result = await waitlist_service.notify_entry(
            salon_id=request.salon_id,
            entry_id=request.entry_id,
            slot_start=request.slot_start,
            slot_end=request.slot_end,
            employee_id=request.employee_id,
        )

        logger.info(
            "Manual waitlist notify processed",
            extra={
                "entry_id": str(request.entry_id),
                "outcome": result.outcome.value,
                "notified": result.notified,
                "idempotency_key": idempotency_key
            }
        )

        return 200, result.model_dump(mode="json")

    try:
        return await handle_idempotent_operation(
            method="waitlist/notify",
            idempotency_key=idempotency_key,
            request_body=request.model_dump(mode="json"),
            operation_func=operation,
            db=db
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in waitlist notification",
            extra={
                "entry_id": str(request.entry_id),
                "idempotency_key": idempotency_key,
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/sweep", response_model=SweepResponse)
async def sweep_waitlist(
    request: SweepRequest,
    db: AsyncSession = DB_DEPENDENCY,
    offer_service: OfferService = OfferServiceDependency
) -> JSONResponse:
    """
    Expire overdue offers, release stale entries, reactivate cooled-down entries
    and send due reminders.

    Intended for cron callers; the background workers run the same sweep.
    """
    claim_service = ClaimService(db, offer_service=offer_service)

    try:
        expired, chained = await claim_service.expire_offers(batch_size=request.batch_size)
        released = await claim_service.release_stale_entries(batch_size=request.batch_size)
        reactivated = await claim_service.reactivate_cooldown_entries(batch_size=request.batch_size)
        reminders = 0
        if request.send_reminders:
            reminders = await offer_service.send_due_reminders(batch_size=request.batch_size)

        response_data = SweepResponse(
            expired_offers=expired,
            released_entries=released,
            chained_offers=chained,
            reactivated_entries=reactivated,
            reminders_sent=reminders,
        )

        logger.info("Waitlist sweep completed", extra=response_data.model_dump())

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in waitlist sweep",
            extra={"error": str(e)},
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e
