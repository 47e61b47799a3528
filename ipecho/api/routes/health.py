from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_class=PlainTextResponse)
def health_check() -> PlainTextResponse:
    """Health check endpoint.

    Used by Cloud Run for liveness and readiness checks. Sits outside the
    rate-limited router so health checks are never throttled.

    Returns:
        PlainTextResponse: ``ok`` followed by a newline.
    """

    return PlainTextResponse("ok\n", headers={"Cache-Control": "no-store"})
