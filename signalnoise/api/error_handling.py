from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from signalnoise.api.schemas import Envelope, ErrorBody
from signalnoise.logging import get_logger
from signalnoise.service.errors import ServerError, ServiceError
from signalnoise.storage.errors import StoreError

logger = get_logger(__name__)

# Stable error codes mapped from HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_content(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> Dict[str, Any]:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    return Envelope(status="error", error=error_body).model_dump(exclude={"data"})


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_content(status_code, message, details, code),
        headers=headers,
    )


def service_error_response(exc: ServiceError, **extra: Any) -> JSONResponse:
    """Render a service error; ``extra`` keys are merged into the top-level body."""
    content = error_content(exc.status_code, exc.message, exc.detail or None, exc.error_code)
    content.update(extra)
    return JSONResponse(status_code=exc.status_code, content=content)


def log_service_error(request: Request, exc: ServiceError) -> None:
    log_fn = logger.error if exc.status_code >= 500 else logger.warning
    log_fn(
        "service_error",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=exc.message,
        detail=exc.detail,
    )


def store_error_response(request: Request, exc: StoreError, **extra: Any) -> JSONResponse:
    """Log a storage failure and render a generic 500; store internals never reach the client."""
    logger.error(
        "store_error",
        path=request.url.path,
        method=request.method,
        message=exc.message,
        detail=exc.detail,
    )
    return service_error_response(ServerError("internal server error"), **extra)


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_service_error(request, exc)
        return service_error_response(exc)

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        return store_error_response(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(
            exc.status_code, message, details, headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")
