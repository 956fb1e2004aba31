"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class ProviderPayment:
    """
    Payment as reported by the provider.

    Used by synchronous payment verification.
    """

    payment_id: str
    status: str  # created, authorized, captured, refunded, failed
    subscription_id: str | None = None
    customer_id: str | None = None

    @property
    def is_successful(self) -> bool:
        return self.status in ("captured", "authorized")


@dataclass(frozen=True)
class ProviderSubscription:
    """
    Subscription as reported by the provider.

    notes carries the metadata written at checkout (userId, email, plan).
    """

    subscription_id: str
    plan_id: str | None
    status: str | None
    customer_id: str | None = None
    current_end: datetime | None = None
    short_url: str | None = None
    notes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionRequest:
    """Request to create a recurring subscription for a configured plan id."""

    plan_id: str
    total_count: int
    notes: dict[str, str]


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    The subscription manager depends on this interface only; the HTTP
    implementation is injected through a FastAPI dependency.
    """

    key_id: str

    def verify_payment_signature(self, payment_id: str, subscription_id: str, signature: str) -> bool:
        """
        Check the signature the checkout widget returns for a payment.

        Returns:
            True when the signature matches, False otherwise
        """
        ...

    async def fetch_payment(self, payment_id: str) -> ProviderPayment:
        """
        Fetch a payment.

        Raises:
            PaymentProviderError: On transport failure, timeout or non-2xx response
        """
        ...

    async def fetch_subscription(self, subscription_id: str) -> ProviderSubscription:
        """
        Fetch a subscription.

        Raises:
            PaymentProviderError: On transport failure, timeout or non-2xx response
        """
        ...

    async def create_subscription(self, request: SubscriptionRequest) -> ProviderSubscription:
        """
        Create a subscription for the client checkout widget.

        Raises:
            PaymentProviderError: On transport failure, timeout or non-2xx response
        """
        ...
