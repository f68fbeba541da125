from __future__ import annotations

from typing import Any

from aws_lambda_powertools import Logger
from mangum import Mangum
from mangum.types import LambdaContext

from space_booking.api import app, metrics

logger = Logger()
handler = Mangum(app)


def _fill_http_v2_defaults(event: dict[str, Any]) -> None:
    # minimal HTTP API v2.0 events (local runs, tests) lack these
    request_context = event.setdefault("requestContext", {})
    http_ctx = request_context.setdefault("http", {})
    http_ctx.setdefault("sourceIp", "127.0.0.1")
    http_ctx.setdefault("userAgent", "pytest")
    request_context.setdefault("stage", "$default")


@metrics.log_metrics
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> Any:
    if event.get("version") == "2.0":
        _fill_http_v2_defaults(event)
    logger.append_keys(route=event.get("routeKey"))
    logger.debug("Reservation API request")
    return handler(event, context)
