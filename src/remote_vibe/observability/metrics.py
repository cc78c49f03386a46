from __future__ import annotations

"""Prometheus metrics for the session server.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for the command pipeline.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Gauge, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "remote_vibe_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

COMMANDS_TOTAL = Counter(
    "remote_vibe_commands_total",
    "Commands and answers by outcome",
    labelnames=("outcome",),
)

QUESTIONS_DETECTED = Counter(
    "remote_vibe_questions_detected_total",
    "Pending questions raised from assistant replies",
    labelnames=("question_type",),
)

MODEL_LATENCY = Histogram(
    "remote_vibe_model_call_seconds",
    "Wall-clock duration of model collaborator calls",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

ACTIVE_SESSIONS = Gauge(
    "remote_vibe_active_sessions",
    "Sessions currently held in memory",
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /sessions/{id}) to a coarse label.

    Keeps the top-level segment only.
    """
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except Exception:
            # Never block the request due to metrics
            pass
        return response

    return middleware
