"""Prometheus metrics for the HTTP surface and the pipeline engines.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- track_operation(): Context manager timing an engine operation
- record_stage_transition() / record_conversion(): Pipeline outcome counters
- get_metrics_response(): Response body for the /metrics route
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import (
    REGISTRY,
    Counter,
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

# ── Pipeline Metrics ─────────────────────────────────────────────────────────

pipeline_stage_transitions_total = Counter(
    "pipeline_stage_transitions_total",
    "Stage transitions attempted, by target stage and outcome",
    ["stage", "status"],
)

pipeline_conversions_total = Counter(
    "pipeline_conversions_total",
    "Lead conversions, by outcome",
    ["outcome"],
)

pipeline_operation_duration_seconds = Histogram(
    "pipeline_operation_duration_seconds",
    "Duration of pipeline engine operations in seconds",
    ["operation", "status"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Records request count and duration per method/endpoint. Skips the
    /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Route pattern keeps opportunity ids out of the label set.
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


# ── Pipeline Helpers ─────────────────────────────────────────────────────────


@asynccontextmanager
async def track_operation(operation: str) -> AsyncGenerator[dict[str, Any], None]:
    """Time an engine operation and record success/error.

    Usage:
        async with track_operation("stage_transition"):
            ...
    """
    tracker: dict[str, Any] = {}
    start_time = time.perf_counter()
    status = "success"
    try:
        yield tracker
    except Exception:
        status = "error"
        raise
    finally:
        pipeline_operation_duration_seconds.labels(
            operation=operation,
            status=status,
        ).observe(time.perf_counter() - start_time)


def record_stage_transition(stage: str, status: str) -> None:
    pipeline_stage_transitions_total.labels(stage=stage, status=status).inc()


def record_conversion(outcome: str) -> None:
    pipeline_conversions_total.labels(outcome=outcome).inc()


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
