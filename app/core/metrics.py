"""Prometheus metrics: HTTP traffic plus AI provider outcomes, failovers and breaker state."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- HTTP metrics ---

APP_INFO = Info("app", "Reading assistant application info")
APP_INFO.info({"version": "1.0.0", "name": "reading_assistant"})

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

# --- AI provider metrics ---

PROVIDER_REQUESTS = Counter(
    "ai_provider_requests_total",
    "Outbound AI provider calls by outcome",
    ["provider", "outcome"],
)

PROVIDER_LATENCY = Histogram(
    "ai_provider_latency_seconds",
    "Latency of successful AI provider calls in seconds",
    ["provider"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 20, 30, 60],
)

FAILOVERS = Counter(
    "ai_failovers_total",
    "Logical requests that needed more than one provider attempt",
)

CIRCUIT_STATE = Gauge(
    "ai_circuit_state",
    "Circuit breaker state per provider (0=closed, 1=half_open, 2=open)",
    ["provider"],
)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


def observe_circuit_state(provider: str, state: str) -> None:
    CIRCUIT_STATE.labels(provider=provider).set(_CIRCUIT_STATE_VALUES.get(state, 0))


# --- Middleware ---

# Path segment after each prefix is a free-form id, collapsed to a placeholder
_PATH_TEMPLATES = {
    "/api/v1/assistant/conversations/": "{conversation_id}",
    "/api/v1/assistant/providers/": "{provider}",
}


def _normalize_path(path: str) -> str:
    """Collapse conversation ids and provider names to keep label cardinality bounded."""
    for prefix, placeholder in _PATH_TEMPLATES.items():
        if path.startswith(prefix):
            _, sep, tail = path[len(prefix) :].partition("/")
            return f"{prefix}{placeholder}{sep}{tail}"
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
