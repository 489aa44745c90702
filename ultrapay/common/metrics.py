"""Prometheus metric definitions for the gateway service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


webhook_requests_total = Counter(
    "webhook_requests_total",
    "Inbound processor callbacks by phase and result",
    ["service", "phase", "result"],
)
webhook_latency_seconds = Histogram(
    "webhook_latency_seconds",
    "Callback handling latency seconds",
    ["service", "phase"],
)
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Redirect URLs issued for checkout attempts",
    ["service"],
)
payment_captures_total = Counter("payment_captures_total", "Successful captures", ["service"])
capture_failures_total = Counter(
    "capture_failures_total",
    "Captures that failed after the prepare record was consumed",
    ["service"],
)
duplicate_completes_total = Counter(
    "duplicate_completes_total",
    "Complete callbacks whose prepare record was missing, expired or consumed",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
