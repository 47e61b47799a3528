"""Global exception handlers for consistent error responses.

Every error the service emits is plaintext: the body is the standard reason
phrase for the status code, so curl users see a readable line and no
internal detail leaks.

Design:
- RateLimitAppError -> 429 with Retry-After / X-RateLimit-* headers
- Other AppError -> 500
- Unexpected Exception -> generic 500 (safety net)
"""

import logging
from http import HTTPStatus

from fastapi import Request
from fastapi.responses import PlainTextResponse

from ipecho.core.errors import AppError, RateLimitAppError
from ipecho.core.logging import get_request_id

logger = logging.getLogger(__name__)


def plain_error_response(
    status_code: int,
    headers: dict[str, str] | None = None,
) -> PlainTextResponse:
    """Build a plaintext error whose body is the status reason phrase."""
    return PlainTextResponse(
        HTTPStatus(status_code).phrase,
        status_code=int(status_code),
        headers=headers,
    )


def _rate_limit_headers(request: Request, exc: RateLimitAppError) -> dict[str, str]:
    settings = getattr(request.app.state, "settings", None)
    if settings is not None and not settings.app.rate_limit_include_headers:
        return {}

    details = exc.details or {}
    headers: dict[str, str] = {}
    if "retry_after" in details:
        headers["Retry-After"] = str(details["retry_after"])
    if "limit" in details:
        headers["X-RateLimit-Limit"] = str(details["limit"])
    if "remaining" in details:
        headers["X-RateLimit-Remaining"] = str(details["remaining"])
    if "reset_at" in details:
        headers["X-RateLimit-Reset"] = str(details["reset_at"])
    return headers


async def app_error_handler(request: Request, exc: AppError) -> PlainTextResponse:
    """Handle domain application errors.

    Routes domain errors to HTTP status codes:
    - RateLimitAppError -> 429 Too Many Requests (client must back off)
    - anything else -> 500 Internal Server Error (pipeline fault)

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        PlainTextResponse with the reason phrase as body.
    """
    if isinstance(exc, RateLimitAppError):
        return plain_error_response(
            HTTPStatus.TOO_MANY_REQUESTS,
            headers=_rate_limit_headers(request, exc) or None,
        )

    logger.error(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": HTTPStatus.INTERNAL_SERVER_ERROR.value,
            "request_id": get_request_id(),
        },
    )
    return plain_error_response(HTTPStatus.INTERNAL_SERVER_ERROR)


async def general_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs the failure with its traceback while returning a generic message.
    Prevents information leakage (no stack traces to client).

    Args:
        request: FastAPI request object.
        exc: Exception instance (unexpected).

    Returns:
        PlainTextResponse 500 with no implementation details.
    """
    logger.error(
        "unhandled_exception",
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={
            "error_type": type(exc).__name__,
            "request_path": request.url.path,
            "request_method": request.method,
            "request_id": get_request_id(),
        },
    )
    return plain_error_response(HTTPStatus.INTERNAL_SERVER_ERROR)


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with FastAPI app.

    Args:
        app: FastAPI application instance.
    """
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
