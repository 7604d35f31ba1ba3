"""FastAPI application initialization and configuration."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.database import async_session_factory, close_db, init_db
from .core.exceptions import (
    ProblemDetailsException,
    generic_exception_handler,
    problem_details_handler,
    validation_exception_handler,
)
from .core.middleware import setup_middleware
from .core.observability import (
    SERVICE_NAME,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_metrics,
    setup_structured_logging,
    setup_tracing,
)
from .routers import booking, claim, health, metrics, slots, waitlist
from .routers.health import check_database
from .workers.manager import worker_manager

# Configure structured logging
setup_structured_logging()

# Plain logging for libraries that bypass structlog
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Set up observability, the database and the offer sweeps; tear down in reverse."""
    # Startup
    logger.info(
        "Starting application",
        extra={"environment": settings.environment, "debug": settings.debug}
    )

    try:
        setup_tracing(SERVICE_NAME)
        setup_metrics(SERVICE_NAME)
        instrument_sqlalchemy()

        await init_db()
        logger.info("Database initialized")

        if settings.workers_enabled:
            await worker_manager.start_all()
    except Exception as e:
        logger.error("Failed to initialize application", extra={"error": str(e)})
        raise

    yield

    # Shutdown
    logger.info("Shutting down application")

    try:
        await worker_manager.stop_all()
        await close_db()
    except Exception as e:
        logger.error("Error during application cleanup", extra={"error": str(e)})

    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="Salon Slot Allocation API",
        description="RPC-over-HTTP API for salon bookings: conflict checks, slot search, "
                    "waitlists and claim-link offers for freed slots",
        version=API_VERSION,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Idempotent-Replayed", "traceparent", "tracestate"],
    )

    # Setup request ID and logging middleware
    setup_middleware(app, enable_logging=True)

    # Instrument FastAPI with OpenTelemetry
    instrument_fastapi(app)

    # Register exception handlers
    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Liveness endpoint (inline)
    @app.get(
        "/health",
        status_code=status.HTTP_200_OK,
        tags=["Health"],
        summary="Liveness Check",
        response_model=dict,
    )
    async def health_check():
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": API_VERSION,
            "environment": settings.environment,
        }

    # Readiness endpoint (inline)
    @app.get(
        "/ready",
        tags=["Health"],
        summary="Readiness Check",
        description="Ready once the database answers and the sweeps are running",
        response_model=dict,
    )
    async def readiness_check():
        async with async_session_factory() as db:
            database_ok = await check_database(db)

        workers = worker_manager.get_worker_status()
        return JSONResponse(
            status_code=status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "ready" if database_ok else "not_ready",
                "service": SERVICE_NAME,
                "checks": {
                    "database": "ok" if database_ok else "unavailable",
                    "workers": workers if settings.workers_enabled else "disabled",
                },
            },
        )

    # Info endpoint (inline)
    @app.get(
        "/info",
        tags=["Info"],
        summary="Service Information",
        response_model=dict,
    )
    async def service_info():
        return {
            "service": SERVICE_NAME,
            "version": API_VERSION,
            "environment": settings.environment,
            "features": {
                "sms_offers": settings.sms_enabled,
                "email_offers": settings.email_enabled,
                "chain_offers_on_expiry": settings.chain_offers_on_expiry,
                "background_workers": settings.workers_enabled,
                "idempotency": True,
            },
            "slot_search": {
                "granularity_minutes": settings.slot_granularity_minutes,
                "max_days": settings.slot_search_max_days,
            },
            "default_claim_expiry_minutes": settings.default_claim_expiry_minutes,
        }

    # Register API routers
    app.include_router(health.router)
    app.include_router(booking.router)
    app.include_router(slots.router)
    app.include_router(waitlist.router)
    app.include_router(claim.router)
    app.include_router(metrics.router)

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
