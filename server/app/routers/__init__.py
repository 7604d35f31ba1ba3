"""FastAPI routers package."""

from .booking import router as booking_router
from .claim import router as claim_router
from .health import router as health_router
from .metrics import router as metrics_router
from .slots import router as slots_router
from .waitlist import router as waitlist_router

__all__ = [
    "booking_router",
    "claim_router",
    "health_router",
    "metrics_router",
    "slots_router",
    "waitlist_router",
]
