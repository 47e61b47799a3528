from __future__ import annotations

from pydantic import BaseModel, Field


class IPResponse(BaseModel):
    """Body of ``GET /json``."""

    ip: str = Field(..., description="Resolved client IP address", examples=["203.0.113.42"])
