"""Prometheus metric definitions for correlation engine self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

ANALYSIS_DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
STAGE_DURATION_BUCKETS = (0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0)
REQUEST_DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)

# ---------------------------------------------------------------------------
# Analysis metrics
# ---------------------------------------------------------------------------

ANALYSES_TOTAL = Counter(
    "query_correlation_analyses_total",
    "Total number of correlation analyses",
    labelnames=["status"],
)

ANALYSIS_DURATION = Histogram(
    "query_correlation_analysis_duration_seconds",
    "End-to-end correlation analysis duration in seconds",
    buckets=ANALYSIS_DURATION_BUCKETS,
)

STAGE_DURATION = Histogram(
    "query_correlation_stage_duration_seconds",
    "Duration of individual analysis stages in seconds",
    labelnames=["stage"],
    buckets=STAGE_DURATION_BUCKETS,
)

STAGE_FAILURES_TOTAL = Counter(
    "query_correlation_stage_failures_total",
    "Analysis stages that raised and were replaced by an empty result",
    labelnames=["stage"],
)

RECORDS_SKIPPED_TOTAL = Counter(
    "query_correlation_records_skipped_total",
    "Records, snapshots or pairs skipped because they could not be processed",
    labelnames=["stage"],
)

CORRELATION_TRUNCATIONS_TOTAL = Counter(
    "query_correlation_correlation_truncations_total",
    "Correlation scans stopped early by cancellation or the pair cap",
)

CYCLE_EDGES_DROPPED_TOTAL = Counter(
    "query_correlation_cycle_edges_dropped_total",
    "Dependency edges dropped to break cycles in the dependency graph",
)

# ---------------------------------------------------------------------------
# Request-level metrics
# ---------------------------------------------------------------------------

REQUEST_DURATION = Histogram(
    "query_correlation_request_duration_seconds",
    "End-to-end request duration in seconds",
    labelnames=["endpoint"],
    buckets=REQUEST_DURATION_BUCKETS,
)

REQUESTS_TOTAL = Counter(
    "query_correlation_requests_total",
    "Total number of requests",
    labelnames=["endpoint", "status"],
)

REQUESTS_IN_PROGRESS = Gauge(
    "query_correlation_requests_in_progress",
    "Number of requests currently being processed",
    labelnames=["endpoint"],
)

# ---------------------------------------------------------------------------
# Info
# ---------------------------------------------------------------------------

APP_INFO = Info(
    "query_correlation",
    "Query correlation engine build information",
)
