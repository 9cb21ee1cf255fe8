"""
Prometheus metrics definitions for the sub-agent sync core.

Defines Counter, Gauge and Histogram metrics for GitHub API traffic,
repository imports, sync jobs, webhook deliveries and quota health.

Naming: snake_case with the subagents_ prefix.
"""

import asyncio
import logging

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, pushadd_to_gateway

logger = logging.getLogger("subagents.metrics")

# ==============================================================================
# COUNTERS - Monotonically increasing values
# ==============================================================================

github_requests_total = Counter(
    "subagents_github_requests_total",
    "GitHub API requests by operation and outcome",
    ["operation", "status"],
    # status: success, not_found, rate_limited, error
)

blob_fetch_retries_total = Counter(
    "subagents_blob_fetch_retries_total",
    "Retries while fetching individual markdown blobs",
    ["reason"],
    # reason: rate_limit, transient
)

imports_total = Counter(
    "subagents_imports_total",
    "Repository import attempts",
    ["status"],
    # status: success, failed
)

agents_imported_total = Counter(
    "subagents_agents_imported_total",
    "Sub-agent records produced by imports",
)

sync_jobs_total = Counter(
    "subagents_sync_jobs_total",
    "Sync jobs by type and terminal status",
    ["job_type", "status"],
    # job_type: full, metadata, content
    # status: completed, failed, skipped
)

webhook_deliveries_total = Counter(
    "subagents_webhook_deliveries_total",
    "Inbound webhook deliveries by event and outcome",
    ["event_type", "outcome"],
    # outcome: processed, ignored, duplicate, invalid_signature, invalid_payload, error
)

quota_alerts_total = Counter(
    "subagents_quota_alerts_total",
    "Quota alerts emitted",
    ["resource", "alert_type"],
    # alert_type: warning, critical, exhausted
)

# ==============================================================================
# GAUGES - Point-in-time values (can go up or down)
# ==============================================================================

quota_remaining = Gauge(
    "subagents_quota_remaining",
    "Remaining GitHub API requests per resource class",
    ["resource"],
)

throttle_queue_size = Gauge(
    "subagents_throttle_queue_size",
    "Requests waiting in the throttler queue",
)

# ==============================================================================
# HISTOGRAMS - Distributions of observed values
# ==============================================================================

sync_duration_seconds = Histogram(
    "subagents_sync_duration_seconds",
    "Repository sync duration in seconds",
    ["job_type"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

import_duration_seconds = Histogram(
    "subagents_import_duration_seconds",
    "Repository import duration in seconds",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 300.0],
)


def push_metrics(gateway_url: str, job: str = "subagents_sync") -> bool:
    """Push the default registry to a Prometheus pushgateway.

    Failures are logged and reported as False; metrics export never
    interrupts a sync cycle.

    Args:
        gateway_url: Pushgateway address (empty string disables pushing)
        job: Pushgateway job label

    Returns:
        True when the push succeeded.
    """
    if not gateway_url:
        return False
    try:
        pushadd_to_gateway(gateway_url, job=job, registry=REGISTRY, timeout=2.0)
        return True
    except Exception as e:
        logger.warning(
            "pushgateway_push_failed",
            extra={
                "gateway": gateway_url,
                "error": str(e),
                "error_type": type(e).__name__,
            },
        )
        return False


async def push_metrics_async(gateway_url: str, job: str = "subagents_sync") -> bool:
    """Run push_metrics() on a worker thread so the event loop keeps running."""
    if not gateway_url:
        return False
    return await asyncio.to_thread(push_metrics, gateway_url, job)
