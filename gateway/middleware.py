"""Middleware that assigns and propagates a request identifier.

``RequestIdMiddleware`` ensures every incoming HTTP request receives a
request identifier. The identifier is read from the incoming ``X-Request-ID``
header when provided by the client, or generated server-side otherwise. It
is stored on ``request.state`` and in a context variable so code running
downstream (log filters, the HTTP payment gateway) can access it without
passing the value explicitly. Each request is logged once on completion.

Behavior contract:
- If the incoming request contains the ``X-Request-ID`` header, that value
  is reused as the request id.
- Otherwise a new UUIDv4 is generated.
- The response will include the same id in the ``X-Request-ID`` header.
"""

import contextvars
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")

logger = logging.getLogger("gateway.access")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Sets and returns a per-request identifier.

    Attributes:
        HEADER (str): Incoming header that may carry a client-provided id.
        RESPONSE_HEADER (str): Header added to outgoing responses.
    """

    HEADER = "X-Request-ID"
    RESPONSE_HEADER = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get(self.HEADER) or str(uuid.uuid4())
        request.state.request_id = rid
        token = REQUEST_ID_CTX.set(rid)
        started = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
        finally:
            logger.info(
                "request handled",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status": status,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            REQUEST_ID_CTX.reset(token)
        response.headers[self.RESPONSE_HEADER] = rid
        return response


class ApiSizeLimitMiddleware(BaseHTTPMiddleware):
    """Rejects request bodies announced above ``max_bytes`` with 413."""

    def __init__(self, app, max_bytes: int = 1 * 1024 * 1024):
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next):
        clen = request.headers.get("content-length")
        if clen and clen.isdigit() and int(clen) > self.max_bytes:
            return JSONResponse({"detail": "PAYLOAD_TOO_LARGE"}, status_code=413)
        return await call_next(request)
