"""Rate limiting dependency for FastAPI routes.

This module wires the rate limiting adapter into the HTTP layer.

Design goals:
- Minimal coupling: API routes depend on a dependency function only.
- Explicit ownership: the limiter is created by the app factory (or injected
  by the caller) and lives on ``app.state``, never in module globals.
- Swap-friendly: storage backend can be replaced behind an abstract
  interface.

Rate limiting strategy:
- Fixed-window limit per resolved client address.
- If the address stage did not populate the request (misconfigured chain),
  fall back to the transport peer host so traffic is never unlimited.
"""

from __future__ import annotations

import hashlib
import logging

from fastapi import Request

from ipecho.adapters.rate_limit.base import AbstractRateLimiter
from ipecho.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from ipecho.core.client_ip import format_peer, lookup_client_address, resolve_peer
from ipecho.core.config import AppSettings
from ipecho.core.errors import RateLimitAppError

logger = logging.getLogger(__name__)


def create_rate_limiter(app_settings: AppSettings) -> AbstractRateLimiter:
    """Build the limiter described by the application settings."""

    return InMemoryFixedWindowRateLimiter(
        limit=app_settings.rate_limit_requests,
        window_seconds=app_settings.rate_limit_window_seconds,
    )


def build_rate_limit_key(request: Request) -> tuple[str, str]:
    """Build the limiter key for the current request.

    Args:
        request: FastAPI request.

    Returns:
        Tuple of (namespaced limiter key, key source) where the source is
        ``resolved`` or ``peer``.
    """

    resolved = lookup_client_address(request.scope)
    if resolved is not None and resolved.value:
        return f"ip:{resolved.value}", "resolved"

    peer_host = resolve_peer(format_peer(request.scope.get("client"))) or "unknown"
    return f"ip:{peer_host}", "peer"


def _hash_limiter_key(key: str) -> str:
    """Hash the rate limit key for logging without exposing the address."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


async def enforce_rate_limit(request: Request) -> None:
    """FastAPI dependency enforcing rate limits.

    When enabled, consumes 1 unit from the requester's budget. If the requester
    exceeds the configured rate, raises RateLimitAppError (rendered as 429).

    Args:
        request: FastAPI request.

    Raises:
        RateLimitAppError: When the rate limit is exceeded.
    """

    app_settings: AppSettings = request.app.state.settings.app
    if not app_settings.rate_limit_enabled:
        return

    limiter: AbstractRateLimiter = request.app.state.rate_limiter
    key, key_source = build_rate_limit_key(request)
    key_hash = _hash_limiter_key(key)

    if key_source == "peer":
        logger.warning(
            "rate_limit.key_fallback",
            extra={"key_hash": key_hash, "reason": "client_address_missing"},
        )

    result = limiter.consume(key)
    if result.allowed:
        logger.debug(
            "rate_limit.allowed",
            extra={
                "key_hash": key_hash,
                "limit": result.limit,
                "remaining": result.remaining,
            },
        )
        return

    retry_after = result.retry_after_seconds or 0
    logger.warning(
        "rate_limit.exceeded",
        extra={
            "key_hash": key_hash,
            "limit": result.limit,
            "remaining": result.remaining,
            "window_s": app_settings.rate_limit_window_seconds,
            "retry_after_s": retry_after,
        },
    )

    raise RateLimitAppError(
        code="rate_limit_exceeded",
        message="Rate limit exceeded. Try again later.",
        details={
            "limit": result.limit,
            "remaining": result.remaining,
            "reset_at": result.reset_at,
            "retry_after": retry_after,
        },
    )
