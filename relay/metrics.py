"""
Prometheus metrics for the relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Ingest item counter (kind, result)
- Change feed event and disruption counters
- Real-time subscriber gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# Ingest outcomes
# kind: message, status, payload
# result: created, duplicate, patched, unchanged, unmatched, error
ingest_items_total = Counter(
    "ingest_items_total",
    "Total payload items processed by ingest",
    labelnames=["kind", "result"]
)

# event: new_message, message_status
feed_events_total = Counter(
    "feed_events_total",
    "Total real-time events published by the change feed",
    labelnames=["event"]
)

feed_disruptions_total = Counter(
    "feed_disruptions_total",
    "Total failed change feed polls"
)

realtime_subscribers = Gauge(
    "realtime_subscribers",
    "Currently connected real-time subscribers"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/api/messages/"):
        normalized_path = "/api/messages/{conversation_id}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_ingest_item(kind: str, result: str, count: int = 1) -> None:
    ingest_items_total.labels(kind=kind, result=result).inc(count)


def record_feed_event(event: str) -> None:
    feed_events_total.labels(event=event).inc()


def record_feed_disruption() -> None:
    feed_disruptions_total.inc()


def set_realtime_subscribers(count: int) -> None:
    realtime_subscribers.set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Content type string for Prometheus exposition format."""
    return CONTENT_TYPE_LATEST
