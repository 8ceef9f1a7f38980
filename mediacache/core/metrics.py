"""Prometheus counters for the transform cache.

Only simple counts are kept; aggregation happens in Prometheus.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Info,
    generate_latest,
)

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "mediacache_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)


# ============================================
# Transform Pipeline Metrics
# ============================================
CACHE_LOOKUPS_TOTAL = Counter(
    "mediacache_cache_lookups_total",
    "Cache lookups by result",
    ["result"],  # hit, miss
    registry=REGISTRY,
)

TRANSFORMS_TOTAL = Counter(
    "mediacache_transforms_total",
    "Completed or failed transforms by output format",
    ["format", "outcome"],  # outcome: success, failed
    registry=REGISTRY,
)

ORIGIN_FETCHES_TOTAL = Counter(
    "mediacache_origin_fetches_total",
    "Origin fetch attempts by outcome",
    ["outcome"],  # ok, rejected, too_large, timeout, http_error, network_error
    registry=REGISTRY,
)

COALESCED_REQUESTS_TOTAL = Counter(
    "mediacache_coalesced_requests_total",
    "Requests that joined an identical in-flight transform",
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
