from fastapi import APIRouter, Request
from fastapi.responses import Response

from gateway.proxy.route_table import ALL_METHODS

router = APIRouter()

PROXY_METHODS = sorted(ALL_METHODS)


# Registered last: every path not claimed by a service route lands here
@router.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy_all(request: Request, path: str) -> Response:
    """Catch-all route that proxies requests to the matching exchange."""
    return await request.app.state.proxy_engine.handle(request)
