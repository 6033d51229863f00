"""
Prometheus metrics for the notification service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook gateway outcome counter (source, result)
- Dispatch outcome counter (category, outcome)
- Provider callback outcome counter (kind, result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Using default buckets: .005 ... 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# source: commerce, provider
# result: accepted, ignored, invalid_signature, unknown_tenant, verified, forbidden
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook gateway outcomes",
    labelnames=["source", "result"]
)

dispatch_outcomes_total = Counter(
    "dispatch_outcomes_total",
    "Outbound message dispatch outcomes",
    labelnames=["category", "outcome"]
)

provider_callbacks_total = Counter(
    "provider_callbacks_total",
    "Provider callback reconciliation outcomes",
    labelnames=["kind", "result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template when known (e.g. /api/tenants/{tenant_id}/stats)
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Strip any query string to avoid high-cardinality labels
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


def record_webhook_outcome(source: str, result: str) -> None:
    webhook_requests_total.labels(source=source, result=result).inc()


def record_dispatch_outcome(category: str, outcome: str) -> None:
    dispatch_outcomes_total.labels(category=category, outcome=outcome).inc()


def record_provider_callback(kind: str, result: str) -> None:
    provider_callbacks_total.labels(kind=kind, result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
