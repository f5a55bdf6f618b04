"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
provider_requests_total = Counter(
    "provider_requests_total",
    "Total telephony provider API requests",
    ["operation", "status"],
)

call_reconciliations_total = Counter(
    "call_reconciliations_total",
    "Total call session reconciliations",
    ["source", "outcome"],  # source: poll/webhook/sync; outcome: updated/billed/provider_error/ignored/session_not_found
)

credit_operations_total = Counter(
    "credit_operations_total",
    "Total call credit ledger operations",
    ["operation"],  # allocate, deduct, manual_add, manual_remove, manual_set
)

insufficient_credits_total = Counter(
    "insufficient_credits_total",
    "Deductions rejected because the active balance was too low",
)

payment_verifications_total = Counter(
    "payment_verifications_total",
    "Admin payment verification decisions",
    ["action", "outcome"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Telephony provider API request duration",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1, 2, 5, 10],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
