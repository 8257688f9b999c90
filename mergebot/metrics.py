import os
from prometheus_client import CollectorRegistry, CONTENT_TYPE_LATEST, generate_latest, Counter, Gauge, Histogram

try:
    from prometheus_client import multiprocess
except Exception:  # pragma: no cover
    multiprocess = None  # type: ignore


def build_registry() -> CollectorRegistry:
    """Build a Prometheus registry, supporting multiprocess if PROMETHEUS_MULTIPROC_DIR is set."""
    registry = CollectorRegistry()
    mp_dir = os.getenv("PROMETHEUS_MULTIPROC_DIR")
    if mp_dir and multiprocess is not None:
        multiprocess.MultiProcessCollector(registry)
    return registry


REGISTRY: CollectorRegistry = build_registry()

# Webhook ingress metrics
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Webhook requests received",
    labelnames=("event", "action", "code"),
    registry=REGISTRY,
)
webhook_invalid_signatures_total = Counter(
    "webhook_invalid_signatures_total",
    "Webhook requests with invalid HMAC signatures",
    registry=REGISTRY,
)
webhook_parse_failures_total = Counter(
    "webhook_parse_failures_total",
    "Webhook payload parse failures",
    labelnames=("event",),
    registry=REGISTRY,
)
event_handler_errors_total = Counter(
    "event_handler_errors_total",
    "Errors raised while handling a webhook event",
    labelnames=("event",),
    registry=REGISTRY,
)

# GitHub API metrics
github_api_requests_total = Counter(
    "github_api_requests_total",
    "Outbound GitHub API requests",
    labelnames=("endpoint", "status"),
    registry=REGISTRY,
)
github_api_latency_seconds = Histogram(
    "github_api_latency_seconds",
    "Latency of GitHub API requests",
    labelnames=("endpoint",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
# Rate limit and backpressure metrics
github_rate_limit_remaining = Gauge(
    "github_rate_limit_remaining",
    "GitHub REST API remaining requests",
    labelnames=("installation",),
    registry=REGISTRY,
)
github_rate_limit_reset = Gauge(
    "github_rate_limit_reset",
    "Epoch seconds when GitHub rate limit resets",
    labelnames=("installation",),
    registry=REGISTRY,
)
throttles_total = Counter(
    "throttles_total",
    "Times the service engaged backpressure due to rate limits",
    labelnames=("scope", "reason"),
    registry=REGISTRY,
)
backpressure_active = Gauge(
    "backpressure_active",
    "1 when backpressure/throttle is active for an installation",
    labelnames=("installation",),
    registry=REGISTRY,
)
redis_latency_seconds = Histogram(
    "redis_latency_seconds",
    "Round-trip latency for Redis operations",
    labelnames=("op",),
    registry=REGISTRY,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5),
)

# Policy metrics
config_fetch_total = Counter(
    "config_fetch_total",
    "Repository policy lookups by result",
    labelnames=("result",),
    registry=REGISTRY,
)
evaluations_total = Counter(
    "evaluations_total",
    "Merge and update decisions by result",
    labelnames=("action", "result"),
    registry=REGISTRY,
)

# Merge and update behavior metrics
background_tasks_active = Gauge(
    "background_tasks_active",
    "Merge and update poll loops currently running",
    labelnames=("kind",),
    registry=REGISTRY,
)
merge_attempts_total = Counter(
    "merge_attempts_total",
    "Merge API calls by method and result",
    labelnames=("method", "result"),
    registry=REGISTRY,
)
merge_outcomes_total = Counter(
    "merge_outcomes_total",
    "Terminal states of merge poll loops",
    labelnames=("outcome",),
    registry=REGISTRY,
)
branch_deletions_total = Counter(
    "branch_deletions_total",
    "Head branch deletions after merge by result",
    labelnames=("result",),
    registry=REGISTRY,
)
update_outcomes_total = Counter(
    "update_outcomes_total",
    "Terminal states of update poll loops",
    labelnames=("outcome",),
    registry=REGISTRY,
)

# Build info (set from environment)
service_info = Gauge(
    "service_info",
    "Service build/version info labeled on 1",
    labelnames=("version",),
    registry=REGISTRY,
)
service_info.labels(version=os.getenv("SERVICE_VERSION", "dev")).set(1)


def metrics_response():
    data = generate_latest(REGISTRY)
    return CONTENT_TYPE_LATEST, data
