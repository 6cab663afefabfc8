"""Prometheus metric definitions for payment reconciliation."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

from tablepay.common.config import settings


reconcile_claims_total = Counter(
    "reconcile_claims_total",
    "Payment claims reconciled against order state",
    ["source", "outcome"],
)
payment_success_total = Counter("payment_success_total", "Orders whose payment was confirmed", ["source"])
payment_failure_total = Counter("payment_failure_total", "Orders whose payment failed or expired", ["source"])
payment_settle_seconds = Histogram(
    "payment_settle_seconds",
    "Seconds from order creation to terminal payment status",
    ["terminal_state"],
)
mismatched_payment_id_total = Counter(
    "mismatched_payment_id_total",
    "Claims rejected because the payment id differs from the one stored on the order",
    ["source"],
)
payment_amount_mismatch_total = Counter(
    "payment_amount_mismatch_total",
    "Claims whose provider amount differs from the order total",
    ["source"],
)
webhook_requests_total = Counter("webhook_requests_total", "Provider webhook deliveries", ["outcome"])
provider_requests_total = Counter(
    "provider_requests_total",
    "Payment provider status fetches",
    ["status_code"],
)
poll_loops_total = Counter("poll_loops_total", "Finished client polling loops", ["final_state"])
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
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
change_feed_publish_failures_total = Counter(
    "change_feed_publish_failures_total",
    "Order change notifications that could not be published",
    ["backend"],
)


def observe_http_request(route: str, method: str, status_code: int, elapsed: float) -> None:
    http_requests_total.labels(
        service=settings.service_name, route=route, method=method, status_code=str(status_code)
    ).inc()
    http_request_duration_seconds.labels(service=settings.service_name, route=route, method=method).observe(
        max(0.0, elapsed)
    )


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
