"""
Metrics Collection with Prometheus.

Exposes access-control and billing metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Histogram, Info

from promptlens.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    PLAN = "plan"
    EVENT_TYPE = "event_type"
    ERROR_TYPE = "error_type"


class AccessMetrics:
    """
    Centralized metrics for the PromptLens access core.

    Covers:
    - HTTP requests (rate, duration)
    - Token verification outcomes per token source
    - Quota decisions per plan
    - Webhook outcomes per event type
    - Subscription transitions
    - Payment provider calls
    """

    def __init__(self) -> None:
        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("promptlens_service", "Service information")
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
            "promptlens_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "promptlens_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Token Verification Metrics
        # ====================================================================
        self.token_verifications_total = Counter(
            "promptlens_token_verifications_total",
            "Bearer token verifications by source and outcome",
            ["source", MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Quota Metrics
        # ====================================================================
        self.quota_decisions_total = Counter(
            "promptlens_quota_decisions_total",
            "Quota checks by plan and decision",
            [MetricLabels.PLAN, "allowed"],
        )

        self.quota_resets_total = Counter(
            "promptlens_quota_resets_total",
            "Rolling window resets applied",
        )

        self.users_created_total = Counter(
            "promptlens_users_created_total",
            "Users provisioned on first authenticated request",
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhooks_total = Counter(
            "promptlens_webhooks_total",
            "Provider webhook deliveries by event type and outcome",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Subscription Metrics
        # ====================================================================
        self.subscription_transitions_total = Counter(
            "promptlens_subscription_transitions_total",
            "Subscription state transitions",
            ["transition", MetricLabels.PLAN],
        )

        self.payment_verifications_total = Counter(
            "promptlens_payment_verifications_total",
            "Synchronous payment verifications by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Payment Provider Metrics
        # ====================================================================
        self.provider_requests_total = Counter(
            "promptlens_provider_requests_total",
            "Outbound payment provider calls",
            [MetricLabels.OPERATION, "success"],
        )

        self.provider_request_duration_seconds = Histogram(
            "promptlens_provider_request_duration_seconds",
            "Payment provider call duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "promptlens_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
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

    def record_token_verification(self, source: str, outcome: str) -> None:
        self.token_verifications_total.labels(source=source, outcome=outcome).inc()

    def record_quota_decision(self, plan: str, allowed: bool) -> None:
        self.quota_decisions_total.labels(plan=plan, allowed=str(allowed).lower()).inc()

    def record_quota_reset(self) -> None:
        self.quota_resets_total.inc()

    def record_user_created(self) -> None:
        self.users_created_total.inc()

    def record_webhook(self, event_type: str, outcome: str) -> None:
        """Record a webhook delivery (processed, duplicate, rejected, failed)."""
        self.webhooks_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_subscription_transition(self, transition: str, plan: str) -> None:
        self.subscription_transitions_total.labels(transition=transition, plan=plan).inc()

    def record_payment_verification(self, outcome: str) -> None:
        self.payment_verifications_total.labels(outcome=outcome).inc()

    def record_provider_request(self, operation: str, success: bool, duration: float) -> None:
        """Record an outbound payment provider call."""
        self.provider_requests_total.labels(operation=operation, success=str(success)).inc()
        self.provider_request_duration_seconds.labels(operation=operation).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = AccessMetrics()
