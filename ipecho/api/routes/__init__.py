from __future__ import annotations

from ipecho.api.routes.health import router as health_router
from ipecho.api.routes.ip import router as ip_router

__all__ = ["health_router", "ip_router"]
