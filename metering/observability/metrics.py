"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from metering.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    DECISION = "decision"
    EVENT = "event"
    ERROR_TYPE = "error_type"


class MeteringMetrics:
    """
    Centralized metrics for the metering API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Searches by outcome (charged, recheck, skipped, rejected)
    - Entitlement decisions by tier
    - Referral lifecycle events
    - Best-effort side effects that failed
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "metering_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "metering_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value, MetricLabels.STATUS_CODE.value],
        )

        self.http_request_duration_seconds = Histogram(
            "metering_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "metering_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
        )

        # ====================================================================
        # Search Metrics
        # ====================================================================
        self.searches_total = Counter(
            "metering_searches_total",
            "Searches by outcome",
            [MetricLabels.OUTCOME.value],
        )

        self.entitlement_decisions_total = Counter(
            "metering_entitlement_decisions_total",
            "Entitlement calculator decisions by kind",
            [MetricLabels.DECISION.value],
        )

        self.search_duration_seconds = Histogram(
            "metering_search_duration_seconds",
            "Search intake duration in seconds",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
        )

        # ====================================================================
        # Referral Metrics
        # ====================================================================
        self.referral_events_total = Counter(
            "metering_referral_events_total",
            "Referral lifecycle events",
            [MetricLabels.EVENT.value],
        )

        self.referral_credits_awarded_total = Counter(
            "metering_referral_credits_awarded_total",
            "Credits granted through referrals (both parties)",
        )

        # ====================================================================
        # Side-effect / Database Metrics
        # ====================================================================
        self.side_effect_failures_total = Counter(
            "metering_side_effect_failures_total",
            "Best-effort writes that failed (history, notifications, reminders)",
            [MetricLabels.OPERATION.value],
        )

        self.db_write_verifications_total = Counter(
            "metering_db_write_verifications_total",
            "Total write verification checks",
            ["success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "metering_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE.value, MetricLabels.OPERATION.value],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_search(self, outcome: str, duration: float) -> None:
        """Record search intake metrics."""
        self.searches_total.labels(outcome=outcome).inc()
        self.search_duration_seconds.observe(duration)

    def record_decision(self, decision: str) -> None:
        """Record an entitlement decision."""
        self.entitlement_decisions_total.labels(decision=decision).inc()

    def record_referral_event(self, event: str, credits: int = 0) -> None:
        """Record a referral lifecycle event."""
        self.referral_events_total.labels(event=event).inc()
        if credits:
            self.referral_credits_awarded_total.inc(credits)

    def record_side_effect_failure(self, operation: str) -> None:
        """Record a failed best-effort write."""
        self.side_effect_failures_total.labels(operation=operation).inc()

    def record_write_verification(self, success: bool) -> None:
        """Record a write verification check."""
        self.db_write_verifications_total.labels(success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = MeteringMetrics()
