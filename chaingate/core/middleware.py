"""Request logging middleware.

Assigns every request an id, records its monotonic start time on
``request.state`` (used by the envelope builder for ``processingTime``) and
writes one access log line per request.
"""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("chaingate.access")

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        request.state.started_at = time.monotonic()

        response = await call_next(request)

        duration_ms = int((time.monotonic() - request.state.started_at) * 1000)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "%s %s %d %dms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={
                "request_id": request_id,
                "context": {
                    "ip": request.client.host if request.client else None,
                    "userAgent": request.headers.get("user-agent"),
                },
            },
        )
        return response
