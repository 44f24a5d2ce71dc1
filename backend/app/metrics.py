"""Prometheus metrics for the discovery service."""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from functools import lru_cache

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# ==============================================================================
# HTTP METRICS
# ==============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

rate_limit_requests_total = Counter(
    "rate_limit_requests_total",
    "Total requests checked by rate limiter",
    ["result"],
)

# ==============================================================================
# DISCOVERY METRICS
# ==============================================================================

discovery_responses_total = Counter(
    "discovery_responses_total",
    "Discovery responses by terminal composer state",
    ["state", "ai_powered"],
)

discovery_duration_seconds = Histogram(
    "discovery_duration_seconds",
    "End-to-end discovery latency in seconds",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
)

guardrail_verdicts_total = Counter(
    "guardrail_verdicts_total",
    "Security verdicts by outcome",
    ["outcome"],
)

provider_selections_total = Counter(
    "provider_selections_total",
    "Provider probe rounds by selected provider",
    ["provider"],
)

provider_failures_total = Counter(
    "provider_failures_total",
    "Provider call failures",
    ["provider", "operation"],
)

provider_available = Gauge(
    "provider_available",
    "Last probe result per provider (1=available)",
    ["provider"],
)

catalog_size = Gauge(
    "catalog_size",
    "Businesses in the active catalog index",
)


@lru_cache(maxsize=2048)
def normalize_endpoint(path: str) -> str:
    """Collapse id-like path segments to keep label cardinality bounded."""
    path = re.sub(
        r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
        "/{id}",
        path,
        flags=re.IGNORECASE,
    )
    path = re.sub(r"/\d+", "/{id}", path)
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = normalize_endpoint(request.url.path)
        start_time = time.perf_counter()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - start_time
            )
            http_requests_total.labels(method=method, endpoint=endpoint, status=status).inc()


def get_metrics() -> Response:
    """Generate Prometheus metrics response."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "PrometheusMiddleware",
    "catalog_size",
    "discovery_duration_seconds",
    "discovery_responses_total",
    "get_metrics",
    "guardrail_verdicts_total",
    "normalize_endpoint",
    "provider_available",
    "provider_failures_total",
    "provider_selections_total",
    "rate_limit_requests_total",
]
