"""Booking router for conflict checks and booking operations."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import get_db
from ..core.dependencies import IdempotencyKey, OfferServiceDependency
from ..core.exceptions import ProblemDetailsException
from ..schemas.common import PROBLEM_RESPONSES
from ..schemas.booking import (
    Booking,
    CancelBookingRequest,
    CancelBookingResponse,
    CreateBookingRequest,
    GetBookingRequest,
    ValidateBookingRequest,
    ValidateBookingResponse,
)
from ..services.booking_service import BookingService
from ..services.conflict_service import ConflictService
from ..services.offer_service import OfferService
from .idempotent import handle_idempotent_operation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/booking", tags=["booking"], responses=PROBLEM_RESPONSES)

# Define dependencies to avoid B008 linting errors
DB_DEPENDENCY = Depends(get_db)


def _convert_booking_to_schema(booking_model) -> Booking:
    """Convert booking model to schema."""
    return Booking.model_validate(booking_model)


@router.post("/validate", response_model=ValidateBookingResponse)
async def validate_booking(
    request: ValidateBookingRequest,
    db: AsyncSession = DB_DEPENDENCY
) -> JSONResponse:
    """
    Check a proposed window against the employee's calendar.

    Read-only; returns conflicts and alternative windows when the window is taken.
    """
    conflict_service = ConflictService(db)

    try:
        result = await conflict_service.validate_booking_change(
            employee_id=request.employee_id,
            new_start=request.start_time,
            new_end=request.end_time,
            booking_id=request.booking_id,
        )

        return JSONResponse(
            status_code=200,
            content=result.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in booking validation",
            extra={
                "employee_id": str(request.employee_id),
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/create", response_model=Booking)
async def create_booking(
    request: CreateBookingRequest,
    db: AsyncSession = DB_DEPENDENCY
) -> JSONResponse:
    """
    Create a booking.

    Fails with 409 Problem Details listing conflicts and suggestions when the
    window is not free.
    """
    booking_service = BookingService(db)

    try:
        booking = await booking_service.create_booking(request)
        response_data = _convert_booking_to_schema(booking)

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in booking creation",
            extra={
                "salon_id": str(request.salon_id),
                "employee_id": str(request.employee_id),
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/cancel", response_model=CancelBookingResponse)
async def cancel_booking(
    request: CancelBookingRequest,
    db: AsyncSession = DB_DEPENDENCY,
    offer_service: OfferService = OfferServiceDependency,
    idempotency_key: str | None = IdempotencyKey
) -> JSONResponse:
    """
    Cancel a booking and offer the freed slot to the waitlist.

    This operation is idempotent based on the Idempotency-Key header.
    """
    booking_service = BookingService(db, offer_service=offer_service)

    async def operation():
        booking, offer = await booking_service.cancel_booking(request)
        response_data = CancelBookingResponse(
            booking=_convert_booking_to_schema(booking),
            waitlist_offer=offer,
        )

        logger.info(
            "Booking cancellation handled",
            extra={
                "booking_id": str(request.booking_id),
                "waitlist_outcome": offer.outcome.value if offer else None,
                "idempotency_key": idempotency_key
            }
        )

        return 200, response_data.model_dump(mode="json")

    try:
        return await handle_idempotent_operation(
            method="booking/cancel",
            idempotency_key=idempotency_key,
            request_body=request.model_dump(mode="json"),
            operation_func=operation,
            db=db
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in booking cancellation",
            extra={
                "booking_id": str(request.booking_id),
                "idempotency_key": idempotency_key,
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/get", response_model=Booking)
async def get_booking(
    request: GetBookingRequest,
    db: AsyncSession = DB_DEPENDENCY
) -> JSONResponse:
    """
    Get booking details.

    This is a read operation and does not require idempotency.
    """
    booking_service = BookingService(db)

    try:
        booking = await booking_service.get_booking(request)
        response_data = _convert_booking_to_schema(booking)

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in booking retrieval",
            extra={
                "booking_id": str(request.booking_id),
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e
