"""
Shared metrics configuration for the admission control service.
"""

from typing import Any, Callable, Dict, Optional
import threading

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its own registry unless one is passed in, so that
    several service instances (one per test, for example) never collide on
    metric names in the process-wide default registry.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_rate_limit_metrics()

    def _setup_rate_limit_metrics(self):
        """Set up admission-control metrics."""
        self._metrics["rate_limit_decisions_total"] = Counter(
            "rate_limit_decisions_total",
            "Admission decisions by policy",
            ["policy", "decision"],
            registry=self.registry
        )

        self._metrics["rate_limit_errors_total"] = Counter(
            "rate_limit_errors_total",
            "Internal accounting errors that failed open",
            ["policy"],
            registry=self.registry
        )

        self._metrics["rate_limit_buckets"] = Gauge(
            "rate_limit_buckets",
            "Live token buckets held in memory",
            registry=self.registry
        )

        self._metrics["rate_limit_evictions_total"] = Counter(
            "rate_limit_evictions_total",
            "Idle buckets evicted by the sweeper",
            registry=self.registry
        )

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read a single sample from this collector's registry."""
        return self.registry.get_sample_value(name, labels or {})

    def render(self) -> bytes:
        """Render the registry in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_rate_limit_decision(self, policy: str, admitted: bool):
        """Record an admit or deny decision."""
        decision = "admitted" if admitted else "denied"
        self._metrics["rate_limit_decisions_total"].labels(policy=policy, decision=decision).inc()

    def record_rate_limit_error(self, policy: str):
        """Record an accounting error that was converted to an admit."""
        self._metrics["rate_limit_errors_total"].labels(policy=policy).inc()

    def track_bucket_count(self, count: Callable[[], int]):
        """Report the live bucket count by calling ``count`` at scrape time."""
        self._metrics["rate_limit_buckets"].set_function(count)

    def record_sweep(self, evicted: int):
        """Record buckets evicted by an idle sweep."""
        with self._lock:
            if evicted:
                self._metrics["rate_limit_evictions_total"].inc(evicted)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
