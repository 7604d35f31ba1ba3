"""Public claim-link callback for waitlist offers."""

import html
import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import get_db
from ..core.dependencies import OfferServiceDependency
from ..schemas.waitlist import ClaimRequest, ClaimResponse, ClaimResultStatus
from ..services.claim_service import CLAIM_ACTIONS, ClaimService
from ..services.offer_service import OfferService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/waitlist", tags=["claim"])

DB_DEPENDENCY = Depends(get_db)

PAGE_TITLES = {
    ClaimResultStatus.ACCEPTED: "Booking confirmed",
    ClaimResultStatus.DECLINED: "Offer declined",
    ClaimResultStatus.EXPIRED: "Offer expired",
    ClaimResultStatus.INVALID: "Link not valid",
    ClaimResultStatus.SLOT_UNAVAILABLE: "Slot no longer available",
}


def _render_page(result: ClaimResponse) -> HTMLResponse:
    title = html.escape(PAGE_TITLES[result.result_status])
    body = (
        "<!DOCTYPE html>"
        "<html><head><meta charset=\"utf-8\">"
        "<meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">"
        f"<title>{title}</title></head>"
        f"<body><main><h1>{title}</h1><p>{html.escape(result.message)}</p></main></body></html>"
    )
    return HTMLResponse(content=body, status_code=200 if result.ok else 409)


@router.get("/claim", response_class=HTMLResponse)
async def claim_from_link(
    action: str | None = Query(None),
    token: str | None = Query(None),
    channel: str = Query("link"),
    db: AsyncSession = DB_DEPENDENCY,
    offer_service: OfferService = OfferServiceDependency
) -> HTMLResponse:
    """
    Accept or decline an offer from the link sent by SMS or email.

    Responds 200 with a confirmation page, or 409 with an explanation for
    expired, used or malformed links.
    """
    if action not in CLAIM_ACTIONS or not token:
        logger.info("Malformed claim link", extra={"action": action, "has_token": bool(token)})
        return _render_page(
            ClaimResponse(
                ok=False,
                message="This link is not valid.",
                result_status=ClaimResultStatus.INVALID,
            )
        )

    # Stored response_channel is at most 32 characters
    channel = channel[:32] or "link"
    claim_service = ClaimService(db, offer_service=offer_service)
    result = await claim_service.resolve_claim(token=token, action=action, response_channel=channel)
    return _render_page(result)


@router.post("/claim", response_model=ClaimResponse)
async def claim_from_api(
    request: ClaimRequest,
    db: AsyncSession = DB_DEPENDENCY,
    offer_service: OfferService = OfferServiceDependency
) -> JSONResponse:
    """Accept or decline an offer; 200 when resolved, 409 otherwise."""
    claim_service = ClaimService(db, offer_service=offer_service)
    result = await claim_service.resolve_claim(
        token=request.token,
        action=request.action,
        response_channel=request.channel,
    )
    return JSONResponse(
        status_code=200 if result.ok else 409,
        content=result.model_dump(mode="json")
    )
