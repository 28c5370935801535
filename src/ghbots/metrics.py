"""Prometheus metrics for bots, publishers and outbound HTTP.

Metrics are exposed at the ``/metrics`` endpoint of the bot server in
Prometheus text format.

Metrics Defined:
- ghbots_events_received_total: Counter of inbound events by type
- ghbots_events_handled_total: Counter of dispatch outcomes by type
- ghbots_dispatch_duration_seconds: Histogram of handler dispatch time
- ghbots_publish_attempts_total: Counter of outbound delivery attempts
- ghbots_http_client_requests_total: Counter of outbound HTTP requests,
  bucketed by destination host
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)


logger = logging.getLogger(__name__)


# Handlers act on GitHub, so dispatch usually takes a handful of API
# round-trips. Covers 10ms to 2 minutes.
DEFAULT_DURATION_BUCKETS = (
    0.01,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
)

DISPATCH_OUTCOMES = (
    "handled",
    "ignored",
    "decode_error",
    "handler_error",
)


class BotMetrics:
    """Container for all Prometheus metrics.

    Supports custom registries so tests can create isolated instances
    without colliding with the process-wide default registry.

    Attributes:
        registry: The Prometheus registry for these metrics.
        events_received_total: Counter for inbound events.
            Labels: type
        events_handled_total: Counter for dispatch outcomes.
            Labels: type, outcome
        dispatch_duration_seconds: Histogram for dispatch duration.
            Labels: type
        publish_attempts_total: Counter for delivery attempts.
            Labels: type, result (ack/nack/undelivered)
        http_client_requests_total: Counter for outbound HTTP requests.
            Labels: bucket, method, code

    Example:
        >>> metrics = BotMetrics(registry=CollectorRegistry())
        >>> metrics.record_dispatch("dev.chainguard.github.pull_request",
        ...                         "handled", 0.2)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics.

        Args:
            registry: Optional Prometheus registry. If None, uses the
                      default REGISTRY. Pass a custom registry for testing.
        """
        self.registry = registry or REGISTRY

        self.events_received_total = Counter(
            "ghbots_events_received_total",
            "Total number of inbound events received",
            labelnames=["type"],
            registry=self.registry,
        )

        self.events_handled_total = Counter(
            "ghbots_events_handled_total",
            "Total number of inbound events by dispatch outcome",
            labelnames=["type", "outcome"],
            registry=self.registry,
        )

        self.dispatch_duration_seconds = Histogram(
            "ghbots_dispatch_duration_seconds",
            "Time spent dispatching events to handlers in seconds",
            labelnames=["type"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.publish_attempts_total = Counter(
            "ghbots_publish_attempts_total",
            "Total number of outbound event delivery attempts",
            labelnames=["type", "result"],
            registry=self.registry,
        )

        self.http_client_requests_total = Counter(
            "ghbots_http_client_requests_total",
            "Total number of outbound HTTP requests",
            labelnames=["bucket", "method", "code"],
            registry=self.registry,
        )

    def record_received(self, event_type: str) -> None:
        """Record that an inbound event was received."""
        self.events_received_total.labels(type=event_type).inc()

    def record_dispatch(
        self,
        event_type: str,
        outcome: str,
        duration_seconds: Optional[float] = None,
    ) -> None:
        """Record the outcome of a dispatch.

        Args:
            event_type: The CloudEvent type.
            outcome: One of DISPATCH_OUTCOMES.
            duration_seconds: Time spent in dispatch, if measured.
        """
        if outcome not in DISPATCH_OUTCOMES:
            logger.warning("Unknown dispatch outcome: %s", outcome)
        self.events_handled_total.labels(type=event_type, outcome=outcome).inc()
        if duration_seconds is not None:
            self.dispatch_duration_seconds.labels(type=event_type).observe(
                duration_seconds
            )

    def record_publish_attempt(self, event_type: str, result: str) -> None:
        """Record a single outbound delivery attempt."""
        self.publish_attempts_total.labels(type=event_type, result=result).inc()

    def record_http_request(self, bucket: str, method: str, code: int) -> None:
        """Record an outbound HTTP request."""
        self.http_client_requests_total.labels(
            bucket=bucket,
            method=method,
            code=str(code),
        ).inc()


# Global metrics instance for the default registry
_default_metrics: Optional[BotMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> BotMetrics:
    """Get or create the metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.

    Returns:
        BotMetrics: The metrics instance.
    """
    global _default_metrics

    if registry is not None:
        return BotMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = BotMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output for the /metrics endpoint.

    Args:
        registry: Optional Prometheus registry. If None, uses the
                  default REGISTRY.

    Returns:
        bytes: Prometheus metrics in text format.
    """
    target_registry = registry or REGISTRY
    return generate_latest(target_registry)
