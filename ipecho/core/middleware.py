"""HTTP middleware chain for the request pipeline.

Stages, outermost first (each may short-circuit with its own response):

1. request id: correlation id in contextvars and response headers
2. client address: resolve once and bind to the request scope
3. request log: method, path, client address, status, latency
4. recovery: unhandled exceptions become a plain 500
5. path cleaning: collapse ``//`` and dot segments before routing
6. deadline: fixed wall-clock budget for the rest of the request

Rate limiting is stage 7 and lives on the router as a dependency, so it only
applies to the routes that need it. The client address stage must stay ahead
of both the request log and the limiter, otherwise they key on the load
balancer's address instead of the client's.

Usage:
    install_middleware(app, request_timeout_seconds=10.0)
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import time
import uuid

from fastapi import FastAPI, Request, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ipecho.core.client_ip import bind_client_address, format_peer, lookup_client_address
from ipecho.core.exception_handlers import general_exception_handler, plain_error_response
from ipecho.core.logging import clear_request_id, get_request_id, set_request_id

logger = logging.getLogger(__name__)


async def request_id_middleware(request: Request, call_next) -> Response:
    """HTTP middleware for request ID generation and propagation.

    If the client provides an X-Request-ID header (configurable via
    LOG_REQUEST_ID_HEADER), that value is used. Otherwise, a new UUID
    is generated. The ID is then propagated back in the response headers
    and stored in contextvars for log correlation.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The response from the next handler with request_id and
            duration headers added.
    """

    header_name = request.app.state.settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response


async def client_address_middleware(request: Request, call_next) -> Response:
    """Resolve the client address and bind it to the request scope.

    The resolver comes from ``app.state`` so the trust model is fixed when the
    app is built. Downstream code reads the value via
    ``ipecho.core.client_ip.get_client_address``.
    """

    resolver = request.app.state.client_address_resolver
    resolved = resolver.resolve(request.headers, format_peer(request.scope.get("client")))
    bind_client_address(request.scope, resolved)
    return await call_next(request)


async def request_log_middleware(request: Request, call_next) -> Response:
    """Log one ``http.request`` record per request."""

    start = time.perf_counter()
    status_code = 500
    try:
        response: Response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        resolved = lookup_client_address(request.scope)
        logger.info(
            "http.request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "client_ip": resolved.value if resolved else None,
                "client_ip_source": resolved.source if resolved else None,
                "status_code": status_code,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )


async def recovery_middleware(request: Request, call_next) -> Response:
    """Convert unhandled downstream exceptions into a 500 response."""

    try:
        return await call_next(request)
    except Exception as exc:
        return await general_exception_handler(request, exc)


def clean_path(path: str) -> str:
    """Normalize a URL path for routing.

    Collapses repeated separators, resolves ``.`` and ``..`` segments and
    drops the trailing slash; the root stays ``/``.

    Examples:
        >>> clean_path("//json")
        '/json'
        >>> clean_path("/a/./b/../json/")
        '/a/json'
    """
    if not path:
        return "/"
    # A leading "//" survives normpath on POSIX, so strip before normalizing.
    return posixpath.normpath("/" + path.lstrip("/"))


async def clean_path_middleware(request: Request, call_next) -> Response:
    """Rewrite the routing path to its cleaned form."""

    path = request.scope.get("path", "")
    cleaned = clean_path(path)
    if cleaned != path:
        request.scope["path"] = cleaned
    return await call_next(request)


class DeadlineMiddleware:
    """Abort requests that exceed a fixed wall-clock budget.

    Implemented as a plain ASGI middleware so the inner application task is
    cancelled on timeout instead of running on in the background. Only the
    timed-out request is affected.
    """

    def __init__(self, app: ASGIApp, timeout_seconds: float) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.app = app
        self.timeout_seconds = timeout_seconds

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await asyncio.wait_for(
                self.app(scope, receive, send_wrapper),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "http.request_timeout",
                extra={
                    "path": scope.get("path"),
                    "timeout_s": self.timeout_seconds,
                    "response_started": response_started,
                    "request_id": get_request_id(),
                },
            )
            if response_started:
                # Headers are already on the wire; the server closes the
                # connection on the incomplete response.
                return
            response = plain_error_response(504)
            await response(scope, receive, send)


def install_middleware(app: FastAPI, *, request_timeout_seconds: float) -> None:
    """Register the pipeline stages on the app.

    Starlette wraps each added middleware around the ones added before it, so
    stages are registered innermost first.
    """

    app.add_middleware(DeadlineMiddleware, timeout_seconds=request_timeout_seconds)
    app.middleware("http")(clean_path_middleware)
    app.middleware("http")(recovery_middleware)
    app.middleware("http")(request_log_middleware)
    app.middleware("http")(client_address_middleware)
    app.middleware("http")(request_id_middleware)
