from fastapi import APIRouter, Request

from app.config.settings import settings
from app.utils.responses import ResponseBuilder

health_router = APIRouter()


@health_router.get("/")
async def health_check(request: Request):
    """
    Liveness check with the state of the in-process scheduler.

    ``scheduler.running`` is false when the scheduler is disabled or when the
    jobs are driven by Celery beat instead.
    """
    runtime = getattr(request.app.state, "scheduler", None)
    return ResponseBuilder.success(
        request=request,
        data={
            "status": "healthy",
            "service": settings.NAME,
            "version": settings.VERSION,
            "scheduler": {
                "backend": settings.SCHEDULER_BACKEND,
                "running": bool(runtime and runtime.running),
                "jobs": runtime.job_names if runtime else [],
            },
        },
        message="Service is running",
    )
