"""
Error taxonomy of the gateway.

Every failure that reaches a client is one of these classes and is rendered as
``{"ok": false, "error": <code>, ...context}``.
"""

from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse


class GatewayError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(
        self,
        message: str = "",
        context: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message or self.code)
        self.context = context or {}
        self.headers = headers or {}

    def body(self) -> Dict[str, Any]:
        payload = {"ok": False, "error": self.code, "code": self.code}
        payload.update(self.context)
        return payload

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code, content=self.body(), headers=self.headers
        )


class RouteNotFound(GatewayError):
    status_code = 404
    code = "route_not_found"

    def __init__(self, path: str):
        super().__init__(f"No route for {path}", context={"path": path})


class UpstreamRateLimited(GatewayError):
    status_code = 503
    code = "rate_limited"

    def __init__(self, endpoint: str, retry_after: int, recent_rejections: int = 0):
        super().__init__(
            f"Upstream rate limited {endpoint}",
            context={
                "endpoint": endpoint,
                "retryAfter": retry_after,
                "recentRejections": recent_rejections,
            },
            headers={"Retry-After": str(retry_after)},
        )


class UpstreamBlocked(GatewayError):
    status_code = 403
    code = "blocked_by_upstream"

    def __init__(self, host: str):
        super().__init__(f"Blocked by {host}", context={"host": host})


class UpstreamTimeout(GatewayError):
    status_code = 502
    code = "upstream_timeout"

    def __init__(self, host: str, timeout: float):
        super().__init__(
            f"Upstream {host} timed out", context={"host": host, "timeout": timeout}
        )


class UpstreamUnreachable(GatewayError):
    status_code = 502
    code = "upstream_unreachable"

    def __init__(self, host: str):
        super().__init__(f"Upstream {host} unreachable", context={"host": host})


class InternalError(GatewayError):
    status_code = 500
    code = "internal_error"
