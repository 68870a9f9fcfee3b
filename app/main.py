from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config.settings import settings
from app.utils.logging import get_logger
from app.routers import health_router, realtime_router
from app.services.realtime import RealtimeHub
from app.tasks.runtime import build_scheduler_runtime
from app.utils.errors import setup_error_handlers
from app.middlewares import REQUEST_ID_HEADER, RequestIDMiddleware

# Initialize the logger
logger = get_logger()


@asynccontextmanager
async def lifespan(application: FastAPI):
    logger.info(f"{settings.NAME} is starting up...")

    hub = RealtimeHub()
    application.state.realtime_hub = hub
    application.state.scheduler = None

    if settings.SCHEDULER_ENABLED and settings.SCHEDULER_BACKEND == "asyncio":
        application.state.scheduler = build_scheduler_runtime(hub=hub)
        application.state.scheduler.start()
    elif settings.SCHEDULER_ENABLED:
        logger.info("Scheduler jobs are driven by Celery beat in this deployment")

    try:
        yield
    finally:
        if application.state.scheduler is not None:
            await application.state.scheduler.stop()
        await hub.drain()
        logger.info(f"{settings.NAME} is shutting down...")


def create_application() -> FastAPI:
    """Initialize the FastAPI application with settings and lifespan events."""
    application = FastAPI(
        title=settings.NAME, version=settings.VERSION, lifespan=lifespan
    )

    # Setup error handlers
    setup_error_handlers(application)

    # Add CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type", REQUEST_ID_HEADER],
    )

    # Add custom middlewares
    application.add_middleware(RequestIDMiddleware)

    # Routers
    application.include_router(health_router, prefix="/health", tags=["Health"])
    application.include_router(
        realtime_router, prefix=settings.WEB_SOCKET_PREFIX, tags=["Realtime"]
    )

    return application


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_config=None,
        log_level=None,
    )
