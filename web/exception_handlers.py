"""RFC 7807 Problem Details exception handlers for FastAPI."""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException

from courier.core.exceptions import (
    ConfigurationError,
    CourierError,
    MessageRejectedError,
    OTPError,
    QueueFullError,
)

_ERROR_TYPES = {
    400: "urn:courier:error:bad-request",
    404: "urn:courier:error:not-found",
    422: "urn:courier:error:validation",
    429: "urn:courier:error:rate-limit",
    500: "urn:courier:error:internal-server",
    503: "urn:courier:error:service-unavailable",
}

_ERROR_TITLES = {
    400: "Bad Request",
    404: "Not Found",
    422: "Validation Error",
    429: "Too Many Requests",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


def _problem(request: Request, status_code: int, detail: str, **extra) -> JSONResponse:
    content = {
        "type": _ERROR_TYPES.get(status_code, f"urn:courier:error:http-{status_code}"),
        "title": _ERROR_TITLES.get(status_code, "Error"),
        "status": status_code,
        "detail": detail,
        "instance": request.url.path,
    }
    content.update(extra)
    return JSONResponse(
        status_code=status_code,
        content=content,
        media_type="application/problem+json",
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert FastAPI HTTPException to RFC 7807 Problem Details format."""
    response = _problem(
        request,
        exc.status_code,
        exc.detail if isinstance(exc.detail, str) else str(exc.detail),
    )
    for key, value in (getattr(exc, "headers", None) or {}).items():
        response.headers[key] = value
    return response


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert Pydantic validation errors to RFC 7807 format."""
    errors = {}
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        errors[field] = error["msg"]

    return _problem(request, 422, "Request validation failed", errors=errors)


async def courier_exception_handler(request: Request, exc: CourierError) -> JSONResponse:
    """Map courier errors that reach the API onto HTTP status codes."""
    if isinstance(exc, (MessageRejectedError, OTPError)):
        status_code = 400
    elif isinstance(exc, QueueFullError):
        status_code = 503
    elif isinstance(exc, ConfigurationError):
        status_code = 500
    else:
        status_code = 503 if exc.recoverable else 500

    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")

    return _problem(request, status_code, exc.message, error=type(exc).__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register exception handlers on the FastAPI application.

    Args:
        app: FastAPI application instance
    """
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(RequestValidationError)(validation_exception_handler)
    app.exception_handler(CourierError)(courier_exception_handler)
