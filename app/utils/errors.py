from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .logging import get_logger
from .responses import ResponseBuilder

logger = get_logger()


class AppError(Exception):
    """
    Base for errors the API turns into an error envelope.

    Subclasses pick the HTTP status and the ``error_type`` reported in
    ``meta``; callers pick the message and a machine-readable code.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "INTERNAL_ERROR"
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code


class DatabaseError(AppError):
    """A store read or write failed."""

    error_type = "DATABASE_ERROR"
    default_code = "DB_ERROR"


class BusinessLogicError(AppError):
    """The request conflicts with the ritual's current state."""

    status_code = status.HTTP_409_CONFLICT
    error_type = "BUSINESS_ERROR"
    default_code = "RITUAL_CONFLICT"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "NOT_FOUND_ERROR"
    default_code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found", error_code: Optional[str] = None):
        super().__init__(message, error_code)


class PushProviderError(AppError):
    """Push provider rejected a request or is misconfigured."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "PUSH_PROVIDER_ERROR"
    default_code = "PUSH_ERROR"


class PushTransportError(PushProviderError):
    """A whole push chunk could not be delivered to the provider."""

    default_code = "PUSH_TRANSPORT_ERROR"


def setup_error_handlers(app: FastAPI):
    """Register the envelope-producing exception handlers on ``app``."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        logger.bind(error_code=exc.error_code).error(
            f"{type(exc).__name__}: {exc.message}"
        )
        return ResponseBuilder.error(
            request=request,
            message=exc.message,
            error_code=exc.error_code,
            status_code=exc.status_code,
            meta={"error_type": exc.error_type},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.warning(f"HTTP {exc.status_code}: {exc.detail}")
        return ResponseBuilder.error(
            request=request,
            message=str(exc.detail),
            error_code="HTTP_ERROR",
            status_code=exc.status_code,
            meta={"http_status": exc.status_code},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = [
            {
                "field": ".".join(str(part) for part in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        logger.bind(problems=len(problems)).warning("Request validation failed")
        return ResponseBuilder.error(
            request=request,
            message="Request validation failed",
            errors=problems,
            error_code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
        logger.opt(exception=exc).error("Unhandled SQLAlchemy error")
        # Driver messages stay in the logs
        return ResponseBuilder.error(
            request=request,
            message="A database error occurred",
            error_code="DATABASE_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            meta={"error_type": "SQLALCHEMY_ERROR"},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error(f"Unhandled exception: {exc}")
        return ResponseBuilder.error(
            request=request,
            message="An internal server error occurred",
            error_code="INTERNAL_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            meta={"error_type": "INTERNAL_ERROR"},
        )
