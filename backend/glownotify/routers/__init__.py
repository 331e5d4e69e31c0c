"""API routers."""
from .notifications import router as notifications_router
from .events import router as events_router

__all__ = ["notifications_router", "events_router"]
