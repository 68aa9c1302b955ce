"""
Request context middleware.

Generates or propagates X-Request-ID headers and stores the id in a
ContextVar so log lines and outgoing backend calls carry the same id.
"""

import time
import logging
from contextvars import ContextVar
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """Get the current request ID from context."""
    return _request_id_var.get()


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid4().hex
        token = _request_id_var.set(request_id)

        start_time = time.time()
        try:
            response = await call_next(request)
            duration_ms = round((time.time() - start_time) * 1000, 2)
            logger.info(
                "%s %s %s %.0fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={"duration_ms": duration_ms},
            )
        finally:
            _request_id_var.reset(token)

        response.headers["X-Request-ID"] = request_id
        return response
