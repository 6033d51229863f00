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

from cart_notifier.metrics import record_http_request


REQUEST_ID_HEADER = "X-Request-ID"

# Set per request by RequestLoggingMiddleware; background tasks started by the
# request inherit it, so dispatch logs carry the webhook's request id
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

access_logger = logging.getLogger("cart_notifier.requests")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per line: ts (ISO-8601, UTC, ms), level, logger, message, request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        log_record["level"] = record.levelname
        if "request_id" not in log_record and request_id_ctx.get():
            log_record["request_id"] = request_id_ctx.get()


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root, uvicorn and library loggers through one JSON handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # Replaced by RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True

    # httpx logs every provider call at INFO; the provider client logs its own outcome
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Access log and HTTP metrics for every request.

    Each request gets a fresh request_id, echoed in the X-Request-ID response
    header. The log line carries method, path, status and latency_ms. Webhook
    handlers add source, result, dup and event_id through log_webhook_data().
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            if request.url.path != "/metrics":
                # Route template keeps tenant ids out of the label set
                route = request.scope.get("route")
                record_http_request(
                    method=request.method,
                    path=getattr(route, "path", request.url.path),
                    status=response.status_code,
                    latency_seconds=elapsed,
                )

            fields = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
                **getattr(request.state, "webhook_log_data", {}),
            }
            access_logger.log(_level_for(response.status_code), "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(
    request: Request,
    source: str,
    result: str,
    event_id: Optional[str] = None,
    dup: bool = False,
) -> None:
    """
    Attach webhook outcome fields to the request's access log line.

    Args:
        request: FastAPI request object
        source: Webhook family (commerce or provider)
        result: Gateway outcome
        event_id: Linked commerce object id, when known
        dup: Whether the gateway already knows this event as a duplicate
    """
    fields = {"source": source, "result": result, "dup": dup}
    if event_id is not None:
        fields["event_id"] = event_id
    request.state.webhook_log_data = fields
