import uuid
from typing import Any, Dict, List, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse

from app.schemas.response_schemas import ApiEnvelope, ResponseStatus


def _render(request: Request, status_code: int, **fields) -> JSONResponse:
    envelope = ApiEnvelope(
        path=request.url.path,
        # Set by RequestIDMiddleware; absent for websocket and early failures
        request_id=getattr(request.state, "request_id", None) or str(uuid.uuid4()),
        **fields,
    )
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


class ResponseBuilder:
    """Builds the JSON envelope returned by routers and error handlers."""

    @staticmethod
    def success(
        request: Request,
        data: Any = None,
        message: str = "OK",
        meta: Optional[Dict[str, Any]] = None,
        status_code: int = status.HTTP_200_OK,
    ) -> JSONResponse:
        return _render(
            request,
            status_code,
            success=True,
            status=ResponseStatus.SUCCESS,
            message=message,
            data=data,
            meta=meta,
        )

    @staticmethod
    def error(
        request: Request,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        error_code: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> JSONResponse:
        meta = dict(meta or {})
        if error_code:
            meta["error_code"] = error_code
        return _render(
            request,
            status_code,
            success=False,
            status=ResponseStatus.ERROR,
            message=message,
            errors=errors,
            meta=meta or None,
        )
