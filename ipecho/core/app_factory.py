from __future__ import annotations

"""Application factory for the FastAPI app.

Centralizes app construction (settings, middleware, handlers, routers) so
tests can build isolated instances with their own settings and limiter.
"""

from fastapi import FastAPI

from ipecho.adapters.rate_limit.base import AbstractRateLimiter
from ipecho.api.routes import health_router, ip_router
from ipecho.core.client_ip import ClientAddressResolver, build_resolver
from ipecho.core.config import Settings
from ipecho.core.config import settings as default_settings
from ipecho.core.exception_handlers import setup_exception_handlers
from ipecho.core.logging import configure_logging
from ipecho.core.middleware import install_middleware
from ipecho.core.rate_limit import create_rate_limiter


def create_app(
    settings: Settings | None = None,
    *,
    rate_limiter: AbstractRateLimiter | None = None,
    resolver: ClientAddressResolver | None = None,
    configure_logs: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        settings: Settings to build from; defaults to the environment.
        rate_limiter: Limiter owned by this app; built from settings if omitted.
        resolver: Client address resolver; built from the trust model if omitted.
        configure_logs: Whether to (re)configure the root logger.

    Returns:
        Configured app with middleware, handlers and routers.
    """
    cfg = settings or default_settings

    # Logging first so subsequent init logs are formatted as desired
    if configure_logs:
        configure_logging(cfg.log)

    app = FastAPI(
        title="ipecho",
        description="Returns the caller's public IP address as plaintext or JSON.",
        version="0.1.0",
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
    )

    app.state.settings = cfg
    app.state.client_address_resolver = resolver or build_resolver(
        cfg.app.trust_model,
        cfg.app.edge_header,
    )
    app.state.rate_limiter = rate_limiter or create_rate_limiter(cfg.app)

    # Middleware
    install_middleware(app, request_timeout_seconds=cfg.app.request_timeout_seconds)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(health_router)
    app.include_router(ip_router)

    return app
