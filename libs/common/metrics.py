"""Metrics collection for the publishing service.

Provides a thin convenience wrapper around ``prometheus_client`` so the
service can consistently record HTTP, reconciliation, control-plane and
usage metrics.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- A single registry is kept per service (can be injected if needed)
- Per-model usage lives in the usage tracker, not in label sets here
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection for the publishing service.

    Parameters
    - service_name: Logical name used for scoping/labels if desired
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)

    Exposes typed helpers for common events to keep label sets consistent.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        # Common metrics
        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        # Publishing-specific metrics
        self.reconcile_operations = Counter(
            'publishing_operations_total',
            'Publishing operations partitioned by outcome',
            ['operation', 'outcome'],
            registry=self.registry
        )

        self.reconcile_duration = Histogram(
            'publishing_operation_duration_seconds',
            'Publishing pipeline duration',
            ['operation'],
            registry=self.registry
        )

        self.control_plane_calls = Counter(
            'publishing_control_plane_calls_total',
            'Control-plane apply/delete calls',
            ['verb', 'kind', 'outcome'],
            registry=self.registry
        )

        self.published_models = Gauge(
            'publishing_published_models',
            'Number of stored publications by status',
            ['status'],
            registry=self.registry
        )

        self.api_key_validations = Counter(
            'publishing_api_key_validations_total',
            'API key validation results',
            ['result'],
            registry=self.registry
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float
    ) -> None:
        """Record HTTP request metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_operation(self, operation: str, outcome: str, duration: float) -> None:
        """Record a publish/update/unpublish/rotate pipeline run."""
        self.reconcile_operations.labels(operation=operation, outcome=outcome).inc()
        self.reconcile_duration.labels(operation=operation).observe(duration)

    def record_control_plane_call(self, verb: str, kind: str, outcome: str) -> None:
        """Record a single control-plane call."""
        self.control_plane_calls.labels(verb=verb, kind=kind, outcome=outcome).inc()

    def set_published_models(self, status: str, count: int) -> None:
        """Set the number of stored publications in a status."""
        self.published_models.labels(status=status).set(count)

    def record_api_key_validation(self, valid: bool) -> None:
        """Record an API key validation result."""
        self.api_key_validations.labels(result="valid" if valid else "invalid").inc()

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str) -> MetricsCollector:
    """Get or create metrics collector for a service.

    Returns a process-wide singleton to avoid duplicate collectors/labels.
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
    return _metrics_collector
