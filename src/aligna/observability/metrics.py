"""Prometheus metrics for the summary service.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for summary outcomes and individual model calls.
"""

from __future__ import annotations

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds); generation can take minutes
REQUEST_LATENCY = Histogram(
    "aligna_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

SUMMARY_OUTCOMES = Counter(
    "aligna_summary_outcomes_total",
    "Summary requests by final outcome",
    labelnames=("outcome",),
)

MODEL_CALLS = Counter(
    "aligna_model_calls_total",
    "Calls to the text-generation provider by model and result",
    labelnames=("model", "result"),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths to their first segment."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def route_label(request: Request) -> str:
    """Matched route template (`/api/ai-summary`), else the first path segment."""
    template = getattr(request.scope.get("route"), "path", None)
    return template or sanitize_path(request.url.path)


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=route_label(request),
                status=str(response.status_code),
            ).observe(elapsed)
        except ValueError:
            # bad label values never fail the request
            pass
        return response

    return middleware
