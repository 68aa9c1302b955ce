"""
Prometheus metrics middleware.

Collects HTTP request metrics (counter + histogram) and exposes
application-level counters for pipeline actions and session refreshes.
"""

import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# ── HTTP metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Pipeline metrics ─────────────────────────────────────────────────────────

pipeline_actions_total = Counter(
    "pipeline_actions_total",
    "Volunteer pipeline actions by outcome",
    ["action", "outcome"],
)

pipeline_action_duration_seconds = Histogram(
    "pipeline_action_duration_seconds",
    "Backend round trip for a pipeline action in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Session metrics ──────────────────────────────────────────────────────────

session_refresh_total = Counter(
    "session_refresh_total",
    "Access token refresh attempts",
    ["result"],
)


def _normalize_path(path: str) -> str:
    """Collapse volunteer ids to reduce cardinality.

    e.g. /api/pipeline/volunteers/42/actions → /api/pipeline/volunteers/{id}/actions
    """
    parts = path.strip("/").split("/")
    normalized = []
    for i, part in enumerate(parts):
        if i > 1 and parts[i - 1] == "volunteers":
            normalized.append("{id}")
        else:
            normalized.append(part)
    return "/" + "/".join(normalized)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.time()
        response = await call_next(request)
        duration = time.time() - start

        http_requests_total.labels(
            method=method,
            path=path,
            status_code=response.status_code,
        ).inc()

        http_request_duration_seconds.labels(
            method=method,
            path=path,
        ).observe(duration)

        return response
