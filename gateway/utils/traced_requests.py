import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from opentelemetry.trace import Status, StatusCode, Tracer

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    start_message: Optional[str] = None,
    extra_attrs: Optional[Dict[str, Any]] = None,
    level: int = logging.DEBUG,
):
    """
    Open a span for one relayed request, set its attributes and log a start line.
    Exceptions escaping the block mark the span as failed with the error's
    class name (and gateway error code when there is one), then propagate.
    """
    with tracer.start_as_current_span(operation) as span:
        if extra_attrs:
            for k, v in extra_attrs.items():
                if v is not None:
                    span.set_attribute(k, v)
        if start_message:
            logger.log(level, start_message)
        try:
            yield span
        except Exception as e:
            span.set_attribute("error.type", type(e).__name__)
            code = getattr(e, "code", None)
            if isinstance(code, str):
                span.set_attribute("gateway.error_code", code)
            span.set_status(Status(StatusCode.ERROR, code or type(e).__name__))
            raise
