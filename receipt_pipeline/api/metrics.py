"""Prometheus metrics for the receipt pipeline.

Exposes key metrics for monitoring:
- Request counts by endpoint and status
- Request duration histograms
- Submission counts for receipts and batches
- Extraction strategy usage and vision fallbacks
- Worker job outcomes

Prometheus naming conventions:
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

# Submission metrics
receipts_submitted_total = Counter(
    "receipts_submitted_total",
    "Total receipts submitted",
    ["mode"],  # queued, manual
)

batches_submitted_total = Counter(
    "batches_submitted_total",
    "Total batch sessions submitted",
    ["status"],  # processing, failed
)

# Extraction metrics
extraction_strategy_total = Counter(
    "extraction_strategy_total",
    "Extractions by the strategy that produced the result",
    ["strategy"],  # vision, heuristic
)

vision_failures_total = Counter(
    "vision_failures_total",
    "Vision strategy attempts that fell back to heuristics",
    ["reason"],  # timeout, error, unavailable
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "End-to-end extraction duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

# Worker metrics
jobs_processed_total = Counter(
    "jobs_processed_total",
    "Worker jobs by kind and outcome",
    ["kind", "status"],  # receipt|batch_file, completed|failed|rejected
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
