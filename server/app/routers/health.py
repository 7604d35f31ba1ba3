"""Health check router."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import get_db, utcnow
from ..schemas.health import HealthResponse, HealthStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/health", tags=["health"])


async def check_database(db: AsyncSession) -> bool:
    """Run a trivial query; False when the database cannot be reached."""
    try:
        await db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.warning("Database health check failed", extra={"error": str(e)})
        return False


@router.post("/ping", response_model=HealthResponse)
async def health_ping(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    """
    Health check endpoint.

    Reports 503 with status "degraded" when the database does not answer.
    """
    database_ok = await check_database(db)
    response_data = HealthResponse(
        status=HealthStatus.HEALTHY if database_ok else HealthStatus.DEGRADED,
        database="ok" if database_ok else "unavailable",
        timestamp=utcnow(),
        version="1.0.0"
    )

    return JSONResponse(
        status_code=200 if database_ok else 503,
        content=response_data.model_dump(mode="json")
    )
