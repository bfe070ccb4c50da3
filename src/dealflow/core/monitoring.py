"""Prometheus metrics for HTTP traffic and buyer-gating activity.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Domain counters for ledger transitions, bulk items and conversions
- track_deal_creation(): Context manager timing collaborator calls
- get_metrics_response(): Response for the /metrics endpoint
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Gating Metrics ───────────────────────────────────────────────────────────

ledger_transitions_total = Counter(
    "ledger_transitions_total",
    "Applied ledger state changes (no-op idempotent calls excluded)",
    ["operation"],
)

bulk_items_total = Counter(
    "bulk_items_total",
    "Items processed by the bulk executor",
    ["kind", "outcome"],
)

bulk_operations_in_flight = Gauge(
    "bulk_operations_in_flight",
    "Bulk operations currently running",
)

deal_conversions_total = Counter(
    "deal_conversions_total",
    "Deal-creation collaborator calls",
    ["status"],
)

deal_creation_duration_seconds = Histogram(
    "deal_creation_duration_seconds",
    "Deal-creation collaborator call duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    Requests are labelled by their route template (e.g.
    /listings/{listing_id}/funnel) so ids never become label values; the raw
    path is used only when no route matched.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # The router stores the matched route in the shared scope.
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Collaborator Timing ─────────────────────────────────────────────────────


@asynccontextmanager
async def track_deal_creation() -> AsyncGenerator[None, None]:
    """Time a deal-creation call and count it as success or error.

    Usage:
        async with track_deal_creation():
            deal_id = await client.create_deal(...)
    """
    start_time = time.perf_counter()
    status = "success"

    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        deal_creation_duration_seconds.observe(time.perf_counter() - start_time)
        deal_conversions_total.labels(status=status).inc()


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
