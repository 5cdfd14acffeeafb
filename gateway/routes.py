
from fastapi import APIRouter, Query, Request

from gateway.market import fetch_top_symbols
from gateway.models import (
    HealthResponse,
    HealthzResponse,
    StatusResponse,
    TopSymbolsResponse,
)
from gateway.utils import utc_timestamp
from gateway.vars import GATEWAY_MODE, TOP_SYMBOLS_LIMIT

router = APIRouter()


@router.get("/", response_model=StatusResponse)
async def root():
    return StatusResponse(status="proxy-ok", timestamp=utc_timestamp())


@router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(ok=True, mode=GATEWAY_MODE, timestamp=utc_timestamp())


@router.get("/healthz", response_model=HealthzResponse)
async def healthz():
    return HealthzResponse(status="ok", mode=GATEWAY_MODE, timestamp=utc_timestamp())


@router.get("/top-symbols", response_model=TopSymbolsResponse)
async def top_symbols(
    request: Request,
    limit: int = Query(
        TOP_SYMBOLS_LIMIT, ge=1, le=500, description="Number of symbols to return"
    ),
):
    engine = request.app.state.proxy_engine
    symbols = await fetch_top_symbols(engine.client, engine.cache, limit)
    return TopSymbolsResponse(ok=True, count=len(symbols), symbols=symbols)
