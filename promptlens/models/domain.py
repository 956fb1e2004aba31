"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from promptlens.models.api import Plan


@dataclass(frozen=True)
class VerifiedClaim:
    """Identity asserted by a successfully verified bearer token."""

    email: str
    subject: str
    expires_at: datetime
    source: Literal["encrypted", "signed"]
    name: str | None = None
    issued_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate claim fields."""
        if not self.email:
            raise ValueError("email cannot be empty")
        if self.email != self.email.strip().lower():
            raise ValueError(f"email must be normalized: {self.email}")


@dataclass(frozen=True)
class QuotaStatus:
    """Usage position of a user inside the current rolling window."""

    usage_count: int
    limit: int | None
    plan: Plan
    reset_at: datetime

    def __post_init__(self) -> None:
        if self.usage_count < 0:
            raise ValueError(f"usage_count cannot be negative: {self.usage_count}")

    @property
    def remaining(self) -> int | None:
        """Actions left in the window, None when unlimited."""
        if self.limit is None:
            return None
        return max(self.limit - self.usage_count, 0)

    @property
    def exhausted(self) -> bool:
        return self.limit is not None and self.usage_count >= self.limit


class WebhookEventKind(str, Enum):
    """Closed set of provider events the intake understands."""

    ACTIVATED = "subscription.activated"
    AUTHENTICATED = "subscription.authenticated"
    CHARGED = "subscription.charged"
    COMPLETED = "subscription.completed"
    CANCELLED = "subscription.cancelled"
    PAYMENT_FAILED = "payment.failed"
    UNHANDLED = "unhandled"

    @classmethod
    def from_event_name(cls, name: str) -> "WebhookEventKind":
        """Map a provider event name to its kind; unknown names are UNHANDLED."""
        for kind in cls:
            if kind.value == name and kind is not cls.UNHANDLED:
                return kind
        return cls.UNHANDLED


@dataclass(frozen=True)
class WebhookOutcome:
    """Result of processing one webhook delivery."""

    event_key: str
    event_type: str
    kind: WebhookEventKind
    duplicate: bool
    user_id: UUID | None = None


@dataclass(frozen=True)
class BillingStatus:
    """Plan and subscription position of a user."""

    user_id: UUID
    plan: Plan
    subscription_id: str | None
    subscription_status: str | None
    subscription_period_end: datetime | None
    has_billing_customer: bool
    quota: QuotaStatus


@dataclass(frozen=True)
class CheckoutSession:
    """Provider subscription created for the client checkout widget."""

    subscription_id: str
    key_id: str
    plan: Plan
    short_url: str | None = None

    def __post_init__(self) -> None:
        if not self.subscription_id:
            raise ValueError("subscription_id cannot be empty")
        if not self.plan.is_paid:
            raise ValueError(f"Checkout requires a paid plan: {self.plan.value}")


@dataclass(frozen=True)
class IssuedToken:
    """Backend access token minted for an authenticated user."""

    token: str
    expires_at: datetime
