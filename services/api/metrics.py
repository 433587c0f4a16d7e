"""Prometheus metrics for the bill intake service.

Exposes key metrics for monitoring:
- Request counts and durations by endpoint
- Documents ingested and why they went to review
- Validation fallbacks, billing calls, corrections and template updates

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Ingestion metrics
documents_ingested_total = Counter(
    "documents_ingested_total",
    "Total documents ingested",
    ["status"],  # approved, pending_review, failed
)

document_upload_size_bytes = Histogram(
    "document_upload_size_bytes",
    "Bill upload size in bytes",
    buckets=(1024, 10240, 102400, 1048576, 10485760),  # 1KB to 10MB
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "Extraction oracle call duration in seconds",
    ["provider"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

review_reasons_total = Counter(
    "review_reasons_total",
    "Review gate conditions that fired",
    ["reason"],  # critical_fields, overall_confidence, autopilot_off, validation_hitl, validation_failed
)

validation_fallbacks_total = Counter(
    "validation_fallbacks_total",
    "Validations replaced by the conservative fallback verdict",
    ["provider"],
)

# Approval metrics
billing_requests_total = Counter(
    "billing_requests_total",
    "Billing API submissions",
    ["status"],  # success, failed, transform_error
)

corrections_recorded_total = Counter(
    "corrections_recorded_total",
    "Field corrections recorded at approval",
)

template_updates_total = Counter(
    "template_updates_total",
    "Supplier template learning runs",
    ["status"],  # created, updated, failed
)

webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Webhook delivery attempts",
    ["event_type", "status"],  # success, failed
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
