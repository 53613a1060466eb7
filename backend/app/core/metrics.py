"""
Prometheus metrics for the reservation service.

Business counters are incremented by the services after their transaction
committed; HTTP metrics come from PrometheusMiddleware. Everything lives in
the default registry and is exposed on /metrics.
"""
import time

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST as OPENMETRICS_CONTENT_TYPE
from prometheus_client.openmetrics.exposition import generate_latest as generate_openmetrics
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# --- HTTP ---
http_requests_total = Counter(
    'http_requests_total',
    'HTTP requests by route template and status',
    ['method', 'endpoint', 'status_code'],
)
http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency by route template',
    ['method', 'endpoint'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0],
)

# --- Reservations ---
reservations_created_total = Counter(
    'reservations_created_total',
    'Cart holds created',
)
reservations_rejected_total = Counter(
    'reservations_rejected_total',
    'Cart holds refused',
    ['reason'],
)
reservations_released_total = Counter(
    'reservations_released_total',
    'Cart holds (or parts of them) returned to available stock',
    ['reason'],
)
reservations_committed_total = Counter(
    'reservations_committed_total',
    'Cart holds converted into sales',
)

# --- Per-variant locking ---
variant_lock_wait_seconds = Histogram(
    'variant_lock_wait_seconds',
    'Wait before a per-variant lock was granted',
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0],
)
variant_lock_timeouts_total = Counter(
    'variant_lock_timeouts_total',
    'Requests that gave up waiting for a per-variant lock',
)

# --- Expiry sweeper ---
sweeper_runs_total = Counter(
    'sweeper_runs_total',
    'Background sweeper passes by outcome',
    ['outcome'],
)
sweeper_expired_total = Counter(
    'sweeper_expired_total',
    'Holds expired by the sweeper',
)

_UNLABELLED_PATHS = frozenset({"/metrics", "/health"})


def _endpoint_label(request: Request) -> str:
    # Route template (/reservations/{reservation_id}) keeps label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Count and time every request except scrapes and probes."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in _UNLABELLED_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            endpoint = _endpoint_label(request)
            http_requests_total.labels(request.method, endpoint, str(status_code)).inc()
            http_request_duration_seconds.labels(request.method, endpoint).observe(
                time.perf_counter() - started
            )


def get_metrics_response(openmetrics: bool = False) -> Response:
    """Render the default registry in Prometheus text or OpenMetrics format."""
    if openmetrics:
        return Response(content=generate_openmetrics(), media_type=OPENMETRICS_CONTENT_TYPE)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
