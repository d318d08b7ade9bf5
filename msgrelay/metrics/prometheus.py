"""Prometheus metrics for msgrelay."""
from prometheus_client import Counter, Gauge, Histogram

# Unified request counter
requests_total = Counter(
    "msgrelay_requests_total",
    "Total proxied requests",
    ["channel", "service_type", "stream", "outcome"],
)

# Request latency histogram
request_latency_ms = Histogram(
    "msgrelay_request_latency_ms",
    "Request latency in milliseconds",
    ["channel", "service_type", "stream"],
    buckets=[10, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 30000, 60000],
)

# Errors counter with detailed labels
errors_total = Counter(
    "msgrelay_errors_total",
    "Total errors",
    ["channel", "error_code", "upstream_status"],
)

# Key health
key_failures_total = Counter(
    "msgrelay_key_failures_total",
    "Total upstream keys marked as failed",
    ["channel"],
)

key_selections_total = Counter(
    "msgrelay_key_selections_total",
    "Total key selections by strategy",
    ["channel", "strategy"],
)

failed_keys = Gauge(
    "msgrelay_failed_keys",
    "Number of keys currently inside their recovery window",
)

# Stream transcoding
stream_chunks_skipped_total = Counter(
    "msgrelay_stream_chunks_skipped_total",
    "Upstream stream chunks skipped because they were not valid JSON",
    ["service_type"],
)

tool_calls_dropped_total = Counter(
    "msgrelay_tool_calls_dropped_total",
    "Tool calls dropped because their arguments never became valid JSON",
    ["service_type"],
)
