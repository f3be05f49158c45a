"""Prometheus metrics for the invoice pipeline.

Process-level counters and histograms that complement the persisted
ProcessingMetric audit rows:
- Invoice processing outcomes and durations
- AI fallback attempts
- Template match scores
- Recovery / retry re-enqueues
- Integration log writes

Metric naming follows the Prometheus guidelines:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram

invoices_processed_total = Counter(
    "invoices_processed_total",
    "Total invoice processing attempts",
    ["method", "outcome"],  # template|ai|none, success|failed
)

invoice_processing_duration_seconds = Histogram(
    "invoice_processing_duration_seconds",
    "Invoice processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

ai_attempts_total = Counter(
    "invoice_ai_attempts_total",
    "Total AI fallback calls",
    ["provider", "outcome"],  # success, overloaded, rate_limited, config, error
)

template_match_score = Histogram(
    "invoice_template_match_score",
    "Fingerprint similarity of the best template candidate",
    buckets=(10, 20, 30, 40, 50, 60, 70, 80, 90, 95, 100),
)

invoices_requeued_total = Counter(
    "invoices_requeued_total",
    "Invoices put back on the processing queue",
    ["reason"],  # recovery, retry, manual
)

integration_log_items_total = Counter(
    "integration_log_items_total",
    "Catalog field changes recorded on invoice approval",
    ["entity_type"],
)