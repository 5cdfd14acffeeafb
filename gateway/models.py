from typing import List

from pydantic import BaseModel


class HealthResponse(BaseModel):
    ok: bool = True
    mode: str
    timestamp: str


class StatusResponse(BaseModel):
    status: str
    timestamp: str


class HealthzResponse(StatusResponse):
    mode: str


class TopSymbolsResponse(BaseModel):
    ok: bool = True
    count: int
    symbols: List[str]
