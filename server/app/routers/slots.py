"""Slot search router."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import get_db
from ..core.exceptions import ProblemDetailsException
from ..schemas.common import PROBLEM_RESPONSES
from ..schemas.slots import SearchSlotsRequest, SearchSlotsResponse
from ..services.slot_service import SlotService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/slots", tags=["slots"], responses=PROBLEM_RESPONSES)


@router.post("/search", response_model=SearchSlotsResponse)
async def search_slots(
    request: SearchSlotsRequest,
    db: AsyncSession = Depends(get_db)
) -> JSONResponse:
    """
    Find the first available slots for a service.

    An empty list means nothing is free in the searched range.
    """
    slot_service = SlotService(db)

    try:
        slots = await slot_service.find_first_available_slots(
            salon_id=request.salon_id,
            service_id=request.service_id,
            date_from=request.date_from,
            date_to=request.date_to,
            employee_id=request.employee_id,
            limit=request.limit,
        )

        response_data = SearchSlotsResponse(items=slots)

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in slot search",
            extra={
                "salon_id": str(request.salon_id),
                "service_id": str(request.service_id),
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e
