"""Prometheus metrics for the application."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

if TYPE_CHECKING:
    from chaingate.gateway.types import ProviderResult

# --- Metrics ---

APP_INFO = Info("app", "chaingate application info")
APP_INFO.info({"version": "1.0.0", "name": "chaingate"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

PROVIDER_CALLS = Counter(
    "provider_calls_total",
    "Total outbound LLM provider calls",
    ["provider", "outcome"],
)

PROVIDER_LATENCY = Histogram(
    "provider_latency_seconds",
    "LLM provider call latency in seconds",
    ["provider"],
    buckets=[0.25, 0.5, 1, 2.5, 5, 10, 20, 30, 60],
)

RATE_LIMIT_REJECTIONS = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    ["tier"],
)


def observe_provider_call(provider: str, result: "ProviderResult") -> None:
    outcome = "success" if result.ok else result.error_kind.value
    PROVIDER_CALLS.labels(provider=provider, outcome=outcome).inc()
    PROVIDER_LATENCY.labels(provider=provider).observe(result.elapsed_ms / 1000)


# --- Middleware ---

# Normalize dynamic path segments to reduce cardinality
_PATH_PREFIXES = ("/api/chat/",)


def _normalize_path(path: str) -> str:
    """Replace user ids in paths with {id} to avoid high cardinality."""
    for prefix in _PATH_PREFIXES:
        if path.startswith(prefix):
            rest = path[len(prefix) :]
            parts = rest.split("/", 1)
            if parts[0] and parts[0] != "save":
                tail = f"/{parts[1]}" if len(parts) > 1 else ""
                return f"{prefix}{{id}}{tail}"
    return path


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
