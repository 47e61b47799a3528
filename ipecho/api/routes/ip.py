"""Endpoints that echo the caller's IP address."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response
from fastapi.responses import PlainTextResponse

from ipecho.core.client_ip import get_client_address
from ipecho.core.rate_limit import enforce_rate_limit
from ipecho.schemas.ip import IPResponse

router = APIRouter(tags=["IP"], dependencies=[Depends(enforce_rate_limit)])

ClientAddress = Annotated[str, Depends(get_client_address)]


@router.get("/", response_class=PlainTextResponse)
async def plain_ip(client_ip: ClientAddress) -> PlainTextResponse:
    """Return the client's IP address as plaintext.

    This is the primary endpoint for curl users.

    Example:
        $ curl -4 https://ipecho.dev
        203.0.113.42
    """
    return PlainTextResponse(f"{client_ip}\n", headers={"Cache-Control": "no-store"})


@router.get("/json", response_model=IPResponse)
async def json_ip(client_ip: ClientAddress, response: Response) -> IPResponse:
    """Return the client's IP address as JSON.

    Example:
        $ curl -4 https://ipecho.dev/json
        {"ip":"203.0.113.42"}
    """
    response.headers["Cache-Control"] = "no-store"
    return IPResponse(ip=client_ip)
