"""
Structured JSON logging for the relay desk.

Every line carries `ts`, `level` and `logger`. Two context variables add
correlation ids when set:

- request_id: one HTTP request, set by RequestLoggingMiddleware
- dispatch_id: one bulk run or single send, set by the dispatcher

A run started in the background keeps the request_id of the request that
started it, since asyncio tasks copy the context at creation.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from relaydesk.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
dispatch_id_ctx: ContextVar[Optional[str]] = ContextVar("dispatch_id", default=None)

_CORRELATION_IDS = (
    ("request_id", request_id_ctx),
    ("dispatch_id", dispatch_id_ctx),
)

# Loggers that would otherwise bypass the JSON handler or flood it
_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")
_QUIET_LOGGERS = ("httpx", "httpcore")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding a UTC millisecond timestamp, level and correlation ids."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = stamp.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name

        for field, var in _CORRELATION_IDS:
            value = var.get()
            if value and field not in log_record:
                log_record[field] = value


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route all application and uvicorn logs through one JSON stdout handler.

    Args:
        log_level: Root level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in _UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    # Request lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    # Outbound calls are logged by the relay and directory clients
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one JSON line per HTTP request and records request metrics.

    Fields: request_id, method, path, status, latency_ms. Send and verify
    routes add message_id and result through log_delivery_data. The
    request id is echoed back in the X-Request-ID header.
    """

    access_logger = logging.getLogger("relaydesk.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id

            # Route template keeps message ids out of the metric labels
            route = request.scope.get("route")
            route_path = getattr(route, "path", request.url.path)
            if route_path != "/metrics":
                record_http_request(request.method, route_path, response.status_code, elapsed)

            fields = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "delivery_log_data", {}))

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            self.access_logger.log(level, "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def log_delivery_data(request: Request, message_id: Optional[str] = None, result: Optional[str] = None) -> None:
    """
    Attach the acted-on message and its outcome to the request log line.

    Args:
        request: Current request
        message_id: Message sent or verified
        result: sent, failed, verified or unverified
    """
    request.state.delivery_log_data = {
        key: value
        for key, value in (("message_id", message_id), ("result", result))
        if value is not None
    }
