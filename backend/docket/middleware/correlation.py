"""
Correlation ID middleware
=========================
Every request carries an X-Correlation-ID (taken from the client or freshly
generated) so log lines from one HTTP call, including provider retries made
on its behalf, can be grouped.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        logger.info(
            "%s %s -> %s (%.1f ms) cid=%s",
            request.method, request.url.path, response.status_code, elapsed_ms, correlation_id,
        )
        response.headers["X-Correlation-ID"] = correlation_id
        return response
