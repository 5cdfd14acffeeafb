import logging
from unittest.mock import MagicMock

import pytest
from opentelemetry.trace import StatusCode

from gateway.errors import UpstreamBlocked
from gateway.utils.traced_requests import traced_request


def make_tracer():
    span = MagicMock()
    tracer = MagicMock()
    tracer.start_as_current_span.return_value.__enter__.return_value = span
    return tracer, span


def test_sets_attributes_and_skips_none():
    tracer, span = make_tracer()

    with traced_request(
        tracer, "proxy_request", extra_attrs={"proxy.route": "binance-spot", "proxy.x": None}
    ) as active:
        assert active is span

    tracer.start_as_current_span.assert_called_once_with("proxy_request")
    span.set_attribute.assert_called_once_with("proxy.route", "binance-spot")


def test_logs_start_message(caplog):
    tracer, _ = make_tracer()

    with caplog.at_level(logging.INFO, logger="uvicorn.error"):
        with traced_request(tracer, "op", start_message="[Proxy] GET /x", level=logging.INFO):
            pass

    assert "[Proxy] GET /x" in caplog.text


def test_gateway_error_marks_span_and_propagates():
    tracer, span = make_tracer()

    with pytest.raises(UpstreamBlocked):
        with traced_request(tracer, "proxy_request"):
            raise UpstreamBlocked("fapi.binance.com")

    span.set_attribute.assert_any_call("error.type", "UpstreamBlocked")
    span.set_attribute.assert_any_call("gateway.error_code", "blocked_by_upstream")
    status = span.set_status.call_args.args[0]
    assert status.status_code is StatusCode.ERROR
