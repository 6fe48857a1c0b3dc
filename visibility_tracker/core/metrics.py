"""Prometheus metrics for collection, scoring and the HTTP surface."""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("app", "Visibility Tracker application info")
APP_INFO.info({"version": "1.0.0", "name": "visibility_tracker"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

PROVIDER_REQUESTS = Counter(
    "provider_requests_total",
    "Provider adapter attempts by outcome",
    ["provider", "collector", "status"],
)

PROVIDER_DURATION = Histogram(
    "provider_request_duration_seconds",
    "Provider adapter attempt duration in seconds",
    ["provider"],
    buckets=[0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600],
)

COLLECTOR_RESULTS = Counter(
    "collector_results_total",
    "Collector results written by final collection status",
    ["collector", "status"],
)

FALLBACK_USED = Counter(
    "fallback_used_total",
    "Collector executions that succeeded on a non-primary provider",
    ["collector"],
)

SCORING_RESULTS = Counter(
    "scoring_results_total",
    "Collector results finalized by the scoring pipeline",
    ["status"],
)

SCORING_STAGE_DURATION = Histogram(
    "scoring_stage_duration_seconds",
    "Duration of a single scoring stage",
    ["stage"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, 60, 120],
)

SCORING_CLAIMS = Counter(
    "scoring_claims_total",
    "Scoring claim attempts by outcome",
    ["outcome"],
)


# --- Middleware ---


def _normalize_path(path: str) -> str:
    """Replace numeric / uuid segments with {id} to avoid high cardinality."""
    parts = []
    for segment in path.split("/"):
        if segment.isdigit() or (len(segment) == 36 and segment.count("-") == 4):
            parts.append("{id}")
        else:
            parts.append(segment)
    return "/".join(parts)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
