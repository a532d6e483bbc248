"""
Prometheus metrics for a chat node.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Ingest outcome counter (origin, result)
- Peer forward outcome counter (result)
- Live subscriber gauge and drop counter (reason)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# origin: local, relayed
# result: created, validation_error, store_error
messages_ingested_total = Counter(
    "messages_ingested_total",
    "Total message ingest outcomes",
    labelnames=["origin", "result"]
)

# result: delivered, rejected, unreachable, skipped
peer_forward_total = Counter(
    "peer_forward_total",
    "Total peer forward outcomes",
    labelnames=["result"]
)

live_subscribers = Gauge(
    "live_subscribers",
    "Currently attached live subscribers"
)

# reason: disconnect, send_error, slow_consumer
subscriber_drops_total = Counter(
    "subscriber_drops_total",
    "Live subscribers removed from the registry",
    labelnames=["reason"]
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

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_ingest_outcome(origin: str, result: str) -> None:
    messages_ingested_total.labels(origin=origin, result=result).inc()


def record_forward_outcome(result: str) -> None:
    peer_forward_total.labels(result=result).inc()


def record_subscriber_drop(reason: str) -> None:
    subscriber_drops_total.labels(reason=reason).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
