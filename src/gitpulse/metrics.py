"""
Prometheus metrics definitions for the gitpulse pipeline.

Covers sync admission, ingestion jobs, batch finalization, event
persistence, webhook processing and the last-seen GitHub rate-limit budget.
Naming: snake_case with a gitpulse_ prefix.
"""

from prometheus_client import Counter, Gauge, Histogram

# ==============================================================================
# COUNTERS - Monotonically increasing values
# ==============================================================================

sync_requests_total = Counter(
    "gitpulse_sync_requests_total",
    "Sync requests by trigger and admission outcome",
    ["trigger", "result"],
    # trigger: manual, cron, webhook, maintenance, recovery
    # result: started, skipped, blocked, rejected, error
)

sync_jobs_total = Counter(
    "gitpulse_sync_jobs_total",
    "Ingestion job invocations by resulting status",
    ["status"],
    # status: completed, failed, blocked, skipped
)

events_persisted_total = Counter(
    "gitpulse_events_persisted_total",
    "Canonical events handed to the fact service",
    ["status", "source"],
    # status: inserted, duplicate, skipped
    # source: job, webhook
)

webhook_deliveries_total = Counter(
    "gitpulse_webhook_deliveries_total",
    "Webhook deliveries processed",
    ["event", "status"],
    # status: enqueued, duplicate, completed, failed
)

batches_finalized_total = Counter(
    "gitpulse_batches_finalized_total",
    "Sync batches that reached a terminal status",
    ["status"],
)

# ==============================================================================
# GAUGES - Point-in-time values
# ==============================================================================

rate_limit_remaining = Gauge(
    "gitpulse_rate_limit_remaining",
    "Most recent X-RateLimit-Remaining seen per installation",
    ["installation"],
)

# ==============================================================================
# HISTOGRAMS - Distributions
# ==============================================================================

job_duration_seconds = Histogram(
    "gitpulse_job_duration_seconds",
    "Wall time of a single ingestion job invocation",
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600),
)
