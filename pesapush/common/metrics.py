"""Prometheus metric definitions shared by the gateway and orchestrator."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


payment_attempts_total = Counter("payment_attempts_total", "Total payment attempts started", ["service"])
payment_outcomes_total = Counter(
    "payment_outcomes_total",
    "Payment attempt outcomes by kind",
    ["service", "kind"],
)
provider_requests_total = Counter(
    "provider_requests_total",
    "Outbound PesaPal requests",
    ["service", "endpoint", "outcome"],
)
provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Outbound PesaPal request duration seconds",
    ["service", "endpoint"],
)
status_polls_total = Counter(
    "status_polls_total",
    "Transaction status polls by observed status",
    ["service", "status"],
)
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


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
