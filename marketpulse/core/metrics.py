from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# Enqueue API
# ---------------------------------------------------------------------------
jobs_enqueued_total = Counter(
    "jobs_enqueued_total",
    "Total jobs submitted to the durable queue",
    ["source", "status"],
)
queue_batch_calls_total = Counter(
    "queue_batch_calls_total",
    "SendMessageBatch calls by outcome",
    ["status"],
)

# ---------------------------------------------------------------------------
# Worker task metrics
# ---------------------------------------------------------------------------
worker_task_total = Counter(
    "worker_task_total",
    "Total worker invocations by platform and outcome",
    ["platform", "status"],
)
worker_task_duration_seconds = Histogram(
    "worker_task_duration_seconds",
    "Duration of worker invocations in seconds",
    ["platform"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600],
)
worker_active_tasks = Gauge(
    "worker_active_tasks",
    "Number of currently active worker invocations",
)
job_attempt_failures_total = Counter(
    "job_attempt_failures_total",
    "Failed extractor attempts by error kind",
    ["kind"],
)

# ---------------------------------------------------------------------------
# Proxy / browser
# ---------------------------------------------------------------------------
proxy_pool_size = Gauge(
    "proxy_pool_size",
    "Proxies currently selectable in this worker's view of the pool",
)
proxy_evictions_total = Counter(
    "proxy_evictions_total",
    "Proxies removed from the pool after a proxy fault",
)
proxy_refresh_total = Counter(
    "proxy_refresh_total",
    "Proxy provider fetches by outcome",
    ["status"],
)
session_rotations_total = Counter(
    "session_rotations_total",
    "Browser sessions torn down and relaunched with a new proxy",
)
active_browser_sessions = Gauge(
    "active_browser_sessions",
    "Number of currently open browser sessions",
)

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
artifacts_written_total = Counter(
    "artifacts_written_total",
    "Artifacts written to blob storage",
    ["kind", "status"],
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
