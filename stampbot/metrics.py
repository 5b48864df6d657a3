"""
Prometheus metrics for the compliance service.

This module provides:
- HTTP request counter (method, path, status)
- Verification outcome counter (check, verdict)
- Broadcast delivery counter (result)
- Request latency histogram (method, path)

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

# check: consent, unsubscribe, rate_limit
# verdict: Verdict name (SUCCESS, TIMEOUT, ...)
verification_outcomes_total = Counter(
    "verification_outcomes_total",
    "Total verification verdicts",
    labelnames=["check", "verdict"]
)

# result: sent, skipped, failed
broadcast_deliveries_total = Counter(
    "broadcast_deliveries_total",
    "Total broadcast delivery outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template when known, else the raw request path
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


def record_verification_outcome(check: str, verdict: str) -> None:
    verification_outcomes_total.labels(check=check, verdict=verdict).inc()


def record_broadcast_delivery(result: str) -> None:
    broadcast_deliveries_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
