from .health import health_router
from .realtime import realtime_router

__all__ = ["health_router", "realtime_router"]
