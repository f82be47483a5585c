from __future__ import annotations

"""Prometheus metrics for the Pagesmith API.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters describing how chat streams end.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

REQUEST_LATENCY = Histogram(
    "pagesmith_request_latency_seconds",
    "HTTP request latency in seconds (time to response headers for streams)",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

CHAT_STREAMS = Counter(
    "pagesmith_chat_streams_total",
    "Chat streams by outcome",
    labelnames=("outcome",),
)

FRAGMENTS_RELAYED = Counter(
    "pagesmith_fragments_relayed_total",
    "Generated fragments written to chat response bodies",
)

PERSISTENCE_FAILURES = Counter(
    "pagesmith_persistence_failures_total",
    "Conversation turns that could not be stored",
)


def sanitize_path(path: str) -> str:
    """Reduce paths to their first static segment to keep label cardinality low."""
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    if segs[0] == "api" and len(segs) > 1:
        return f"/api/{segs[1]}"
    return "/" + segs[0]


def record_stream_outcome(outcome: str) -> None:
    CHAT_STREAMS.labels(outcome=outcome).inc()


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
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except Exception:
            # Never block the request due to metrics
            pass
        return response

    return middleware
