"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed. Response bodies
serialize to camelCase to match the web dashboard and browser extension.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class Plan(str, Enum):
    """Commercial plan enumeration."""

    FREE = "free"
    PRO_MONTHLY = "pro_monthly"
    PRO_YEARLY = "pro_yearly"

    @classmethod
    def parse(cls, value: str | None) -> "Plan | None":
        """Return the matching plan, or None for unknown values."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def is_paid(self) -> bool:
        return self is not Plan.FREE

    @property
    def display_name(self) -> str:
        return {"free": "Free", "pro_monthly": "Pro Monthly", "pro_yearly": "Pro Yearly"}[self.value]


class SubscriptionStatus(str, Enum):
    """Subscription statuses written by this service."""

    ACTIVE = "active"
    CANCELLED = "cancelled"


class CamelModel(BaseModel):
    """Base for response bodies rendered in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


DataT = TypeVar("DataT")


# ============================================================================
# Envelopes
# ============================================================================


class SuccessResponse(BaseModel, Generic[DataT]):
    """Standard success envelope."""

    success: Literal[True] = True
    data: DataT
    timestamp: datetime


class ErrorBody(BaseModel):
    """Error payload inside the error envelope."""

    message: str
    code: str | None = None
    details: Any = None


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    success: Literal[False] = False
    error: ErrorBody
    timestamp: datetime


class WebhookAckResponse(BaseModel):
    """Fixed acknowledgement returned to the payment provider."""

    received: Literal[True] = True


# ============================================================================
# Auth Models
# ============================================================================


class TokenUser(CamelModel):
    id: str
    email: str
    name: str | None = None


class TokenResponse(CamelModel):
    """GET /api/auth/token response."""

    access_token: str
    user: TokenUser
    expires_at: datetime


# ============================================================================
# Usage Models
# ============================================================================


class UsageResponse(CamelModel):
    """GET /api/usage response."""

    user_id: str
    daily_count: int
    daily_limit: int | None
    monthly_count: int
    monthly_limit: int | None
    remaining: int | None
    reset_at: datetime
    plan: Plan


# ============================================================================
# Billing Models
# ============================================================================


class CheckoutRequest(BaseModel):
    """POST /api/billing/checkout request body."""

    plan: Literal["pro_monthly", "pro_yearly"]


class CheckoutResponse(CamelModel):
    """POST /api/billing/checkout response."""

    subscription_id: str
    key_id: str
    plan: Plan
    short_url: str | None = None


class VerifyPaymentRequest(BaseModel):
    """POST /api/billing/verify request body (fields named as the checkout widget sends them)."""

    razorpay_payment_id: str = Field(..., min_length=1, max_length=255)
    razorpay_subscription_id: str = Field(..., min_length=1, max_length=255)
    razorpay_signature: str = Field(..., min_length=1, max_length=512)


class VerifyPaymentResponse(CamelModel):
    """POST /api/billing/verify response."""

    success: bool
    plan: Plan
    subscription_id: str
    subscription_period_end: datetime | None = None


class BillingStatusResponse(CamelModel):
    """GET /api/billing/status response."""

    plan: Plan
    subscription_id: str | None
    subscription_status: str | None
    subscription_period_end: datetime | None
    has_billing_customer: bool
    usage_count: int
    limit: int | None
    reset_at: datetime


# ============================================================================
# Provider Webhook Models
# ============================================================================


def _coerce_notes(value: Any) -> dict[str, Any]:
    # The provider sends an empty list instead of an empty object.
    if value is None or value == []:
        return {}
    if isinstance(value, dict):
        return value
    raise ValueError("notes must be an object")


class SubscriptionEntity(BaseModel):
    """Subscription entity as delivered in webhook payloads and API reads."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    plan_id: str | None = None
    status: str | None = None
    customer_id: str | None = None
    current_start: int | None = None
    current_end: int | None = None
    short_url: str | None = None
    notes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("notes", mode="before")
    @classmethod
    def normalize_notes(cls, v: Any) -> dict[str, Any]:
        return _coerce_notes(v)


class PaymentEntity(BaseModel):
    """Payment entity as delivered in webhook payloads and API reads."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    status: str | None = None
    subscription_id: str | None = None
    invoice_id: str | None = None
    order_id: str | None = None
    customer_id: str | None = None
    error_code: str | None = None
    error_description: str | None = None
    notes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("notes", mode="before")
    @classmethod
    def normalize_notes(cls, v: Any) -> dict[str, Any]:
        return _coerce_notes(v)


class SubscriptionWrapper(BaseModel):
    entity: SubscriptionEntity


class PaymentWrapper(BaseModel):
    entity: PaymentEntity


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription: SubscriptionWrapper | None = None
    payment: PaymentWrapper | None = None


class ProviderEvent(BaseModel):
    """Verified webhook body."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    entity: str = "event"
    event: str = Field(..., min_length=1)
    payload: EventPayload = Field(default_factory=EventPayload)
    created_at: int | None = None

    @property
    def subscription(self) -> SubscriptionEntity | None:
        return self.payload.subscription.entity if self.payload.subscription else None

    @property
    def payment(self) -> PaymentEntity | None:
        return self.payload.payment.entity if self.payload.payment else None


# ============================================================================
# Health Check Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
