"""
Prometheus metrics for the relay desk.

HTTP traffic:
- http_requests_total{method, path, status}
- request_latency_seconds{method, path}

Delivery pipeline:
- relay_deliveries_total{result}: one per dispatch step. result is "sent",
  "skipped" or the lowercased error kind
- dispatch_runs_total{outcome}: completed or cancelled bulk runs
- external_lookups_total{service, result}: directory, clock and update-feed
  calls, result ok / not_found / error
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


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

relay_deliveries_total = Counter(
    "relay_deliveries_total",
    "Messages processed by the dispatcher, by outcome",
    labelnames=["result"]
)

dispatch_runs_total = Counter(
    "dispatch_runs_total",
    "Bulk dispatch runs, by how they ended",
    labelnames=["outcome"]
)

external_lookups_total = Counter(
    "external_lookups_total",
    "Calls to the directory service and relay update feed",
    labelnames=["service", "result"]
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Args:
        method: HTTP method
        path: Route template, e.g. /messages/{message_id}
        status: Response status code
        latency_seconds: Time spent handling the request
    """
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_delivery_outcome(result: str) -> None:
    relay_deliveries_total.labels(result=result).inc()


def record_dispatch_run(outcome: str) -> None:
    dispatch_runs_total.labels(outcome=outcome).inc()


def record_lookup(service: str, result: str) -> None:
    external_lookups_total.labels(service=service, result=result).inc()


def get_metrics() -> bytes:
    """Current metrics in the Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
