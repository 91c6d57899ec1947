"""
Relay request middleware.

Every request gets:
    • a correlation id (X-Request-ID, taken from the caller or generated)
      bound into the log context, so the send and poll tasks spawned by
      POST /api/v1/events log under the same id
    • X-Process-Time
    • X-HEC-Channel: the relay's active channel id, so a caller can find
      its events in Splunk by channel
    • one access-log line (probe and docs paths excepted)
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from hec_ack.core.logging_config import set_log_context

logger = logging.getLogger(__name__)

QUIET_PREFIXES = ("/health", "/docs", "/redoc", "/openapi", "/favicon")
CHANNEL_HEADER = "X-HEC-Channel"


def _active_channel_id(request: Request) -> Optional[str]:
    client = getattr(request.app.state, "client", None)
    channel = client.registry.active if client is not None else None
    return channel.id if channel is not None else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Correlation id, timing, channel header and access log."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        set_log_context(request_id=request_id, endpoint=path)

        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            if status_code >= 500 or not path.startswith(QUIET_PREFIXES):
                logger.log(
                    logging.WARNING if status_code >= 400 else logging.INFO,
                    "%s %s → %d (%.1fms)", request.method, path, status_code, duration_ms,
                    extra={"duration_ms": duration_ms, "status_code": status_code, "endpoint": path},
                )
            set_log_context()

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"
        channel_id = _active_channel_id(request)
        if channel_id:
            response.headers[CHANNEL_HEADER] = channel_id
        return response
