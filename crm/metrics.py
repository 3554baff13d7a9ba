"""
Prometheus metrics for the CRM API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook delivery outcome counter (result)
- Ingested event counter (result)
- Outbound gateway call counter (operation, result)

Metrics are stored in-memory using prometheus-client. Webhook failures are
invisible to the provider, so these counters are how operators see them.
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

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: processed, empty, error, invalid_signature, invalid_json
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook delivery outcomes",
    labelnames=["result"]
)

# result: created, duplicate, unknown_tenant, error
ingested_events_total = Counter(
    "ingested_events_total",
    "Inbound WhatsApp message events by outcome",
    labelnames=["result"]
)

# operation: send, mark_read; result: success, failure, skipped
gateway_calls_total = Counter(
    "gateway_calls_total",
    "Outbound gateway calls by outcome",
    labelnames=["operation", "result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template when known (``/api/contacts/{contact_id}``), else raw path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
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


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_ingested_event(result: str) -> None:
    ingested_events_total.labels(result=result).inc()


def record_gateway_call(operation: str, result: str) -> None:
    gateway_calls_total.labels(operation=operation, result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
