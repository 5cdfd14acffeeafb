import logging
from contextlib import asynccontextmanager
from typing import Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from gateway.errors import GatewayError, InternalError
from gateway.proxy import HttpProxyEngine, create_upstream_client
from gateway.proxy.engine import CACHE_STATUS_HEADER
from gateway.proxy.route import router as proxy_router
from gateway.routes import router as service_router
from gateway.tunnel import TunnelEngine
from gateway.tunnel.route import router as tunnel_router
from gateway.utils.exception_logging import log_exception_with_details
from gateway.vars import CORS_ALLOW_ORIGINS, OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

logger = logging.getLogger("uvicorn.error")


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streaming responses.
    Every relayed upstream chunk would otherwise produce its own span.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


trace.set_tracer_provider(
    TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
)
if OTLP_ENDPOINT:
    otlp_exporter = OTLPSpanExporter(
        endpoint=OTLP_ENDPOINT,
        headers=((OTLP_HEADERS).split(",") if OTLP_HEADERS else None),
    )
    trace.get_tracer_provider().add_span_processor(
        BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
    )

app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})


async def gateway_error_handler(request: Request, exc: GatewayError):
    return exc.to_response()


async def unexpected_error_handler(request: Request, exc: Exception):
    log_exception_with_details(logger, f"[Server] {request.url.path}", exc)
    return InternalError().to_response()


def build_app(
    proxy_engine: Optional[HttpProxyEngine] = None,
    tunnel_engine: Optional[TunnelEngine] = None,
    expose_metrics: bool = True,
) -> FastAPI:
    """
    Assemble the gateway application. Engines may be injected so that tests get
    isolated caches and fake upstreams; otherwise they are created here and the
    upstream HTTP client is closed on shutdown.
    """
    owns_client = proxy_engine is None
    if proxy_engine is None:
        proxy_engine = HttpProxyEngine(create_upstream_client())
    if tunnel_engine is None:
        tunnel_engine = TunnelEngine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"[Server] {SERVICE_NAME} ready with {len(proxy_engine.routes.routes)} "
            f"HTTP routes and {len(tunnel_engine.targets.paths())} WebSocket relays"
        )
        yield
        if owns_client:
            await proxy_engine.client.aclose()

    app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
    app.state.proxy_engine = proxy_engine
    app.state.tunnel_engine = tunnel_engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[CACHE_STATUS_HEADER, "X-Cache-Age", "Retry-After"],
    )
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    if expose_metrics:
        Instrumentator().instrument(app).expose(app)
    FastAPIInstrumentor.instrument_app(app)

    # Order matters: the proxy catch-all must come after the service routes
    app.include_router(service_router)
    app.include_router(tunnel_router)
    app.include_router(proxy_router)
    return app


app = build_app()
