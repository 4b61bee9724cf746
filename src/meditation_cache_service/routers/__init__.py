"""API routers."""

from .cache_admin import router as cache_admin_router
from .health import router as health_router
from .segments import router as segments_router

__all__ = ["cache_admin_router", "health_router", "segments_router"]
