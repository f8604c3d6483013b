"""
Metrics for the project annotator.

Components receive a MetricsSink through their constructor. The base class
records nothing; PrometheusMetrics exports counters and histograms through
prometheus_client. Each PrometheusMetrics instance can own its registry so
several instances (for example in tests) never share counters.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, REGISTRY

# Decision status labels
STATUS_ALLOWED = "allowed"
STATUS_DENIED = "denied"
STATUS_ERROR = "error"
STATUS_SKIPPED = "skipped"
STATUS_MUTATED = "mutated"
STATUS_DRY_RUN = "dry_run"

# Cache types
CACHE_TYPE_CLUSTER = "cluster"
CACHE_TYPE_PROJECT = "project"

# Lookup error types
ERROR_TYPE_NOT_FOUND = "not_found"
ERROR_TYPE_API = "api_error"

METRICS_NAMESPACE = "project_annotator"


class MetricsSink:
    """Metrics interface. Every method is a no-op unless overridden."""

    def record_request(self, operation: str, status: str, duration: float) -> None:
        pass

    def record_cache_hit(self, cache_type: str) -> None:
        pass

    def record_cache_miss(self, cache_type: str) -> None:
        pass

    def record_lookup_error(self, lookup: str, error_type: str) -> None:
        """Record a failed lookup. ``lookup`` is a cache type, ``error_type`` one of the ERROR_TYPE_* labels."""
        pass


class PrometheusMetrics(MetricsSink):
    """
    MetricsSink backed by prometheus_client collectors.

    Args:
        registry: Registry to register the collectors in (a fresh one when None)
        namespace: Prefix for every metric name
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None,
                 namespace: str = METRICS_NAMESPACE):
        self.registry = registry if registry is not None else CollectorRegistry()

        self.requests_total = Counter(
            "requests_total",
            "Total number of webhook requests",
            ["operation", "status"],
            namespace=namespace,
            registry=self.registry,
        )
        self.request_duration = Histogram(
            "request_duration_seconds",
            "Duration of webhook request processing in seconds",
            ["operation"],
            namespace=namespace,
            registry=self.registry,
        )
        self.cache_hits_total = Counter(
            "cache_hits_total",
            "Total number of cache hits",
            ["cache_type"],
            namespace=namespace,
            registry=self.registry,
        )
        self.cache_misses_total = Counter(
            "cache_misses_total",
            "Total number of cache misses",
            ["cache_type"],
            namespace=namespace,
            registry=self.registry,
        )
        self.cluster_lookup_errors_total = Counter(
            "cluster_lookup_errors_total",
            "Total number of cluster lookup errors",
            ["error_type"],
            namespace=namespace,
            registry=self.registry,
        )
        self.project_lookup_errors_total = Counter(
            "project_lookup_errors_total",
            "Total number of project lookup errors",
            ["error_type"],
            namespace=namespace,
            registry=self.registry,
        )

    @classmethod
    def default(cls) -> 'PrometheusMetrics':
        """Metrics registered in the process-wide default registry, as served by start_http_server."""
        return cls(registry=REGISTRY)

    def record_request(self, operation: str, status: str, duration: float) -> None:
        self.requests_total.labels(operation=operation, status=status).inc()
        self.request_duration.labels(operation=operation).observe(duration)

    def record_cache_hit(self, cache_type: str) -> None:
        self.cache_hits_total.labels(cache_type=cache_type).inc()

    def record_cache_miss(self, cache_type: str) -> None:
        self.cache_misses_total.labels(cache_type=cache_type).inc()

    def record_lookup_error(self, lookup: str, error_type: str) -> None:
        if lookup == CACHE_TYPE_CLUSTER:
            self.cluster_lookup_errors_total.labels(error_type=error_type).inc()
        else:
            self.project_lookup_errors_total.labels(error_type=error_type).inc()
