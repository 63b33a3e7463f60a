"""
Prometheus metrics for the marketplace settlement engine.

Service operation timings come from ``@BaseService.measure_operation``;
settlement jobs and money movements have their own domain counters.
"""

from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "marketplace_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "marketplace_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "marketplace_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

settlement_job_items_total = Counter(
    "marketplace_settlement_job_items_total",
    "Items processed by settlement jobs",
    ["job", "outcome"],  # outcome: succeeded | skipped | failed
    registry=REGISTRY,
)

settlement_job_duration_seconds = Histogram(
    "marketplace_settlement_job_duration_seconds",
    "Settlement job run duration in seconds",
    ["job"],
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

gateway_calls_total = Counter(
    "marketplace_gateway_calls_total",
    "Payment gateway calls by operation and outcome",
    ["operation", "outcome"],  # outcome: ok | error | timeout
    registry=REGISTRY,
)

notifications_emitted_total = Counter(
    "marketplace_notifications_emitted_total",
    "Notification requests handed to the sink",
    ["type", "outcome"],  # outcome: delivered | failed
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingService')
            operation: Operation/method name (e.g., 'create_booking')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_job_item(job: str, outcome: str) -> None:
        settlement_job_items_total.labels(job=job, outcome=outcome).inc()

    @staticmethod
    def observe_job_duration(job: str, duration: float) -> None:
        settlement_job_duration_seconds.labels(job=job).observe(max(duration, 0.0))

    @staticmethod
    def record_gateway_call(operation: str, outcome: str) -> None:
        gateway_calls_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_notification(notification_type: str, outcome: str) -> None:
        notifications_emitted_total.labels(type=notification_type, outcome=outcome).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        """Get the content type for Prometheus metrics."""
        return cast(str, CONTENT_TYPE_LATEST)


# Singleton instance
prometheus_metrics = PrometheusMetrics()
