"""
API Routes - Auth, usage, billing and webhook endpoints.

NO DICTIONARIES - All requests/responses use Pydantic models.

Billing routes authenticate without quota enforcement: a user who has used
up the window must still be able to upgrade.
"""

from datetime import UTC, datetime, timedelta
from typing import TypeVar

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from promptlens.api.dependencies import (
    AuthenticatedUnchecked,
    get_subscription_manager,
    get_webhook_intake,
    require_authenticated_no_quota,
)
from promptlens.config import settings
from promptlens.db.session import get_read_db
from promptlens.exceptions import PaymentProviderNotConfiguredError, ServiceUnavailableError
from promptlens.models.api import (
    BillingStatusResponse,
    CheckoutRequest,
    CheckoutResponse,
    HealthResponse,
    Plan,
    SuccessResponse,
    TokenResponse,
    TokenUser,
    UsageResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookAckResponse,
)
from promptlens.services.quota import QuotaLedger
from promptlens.services.subscription import SubscriptionManager
from promptlens.services.tokens import issue_access_token
from promptlens.services.webhook_intake import WebhookIntake

logger = get_logger(__name__)

router = APIRouter()

DataT = TypeVar("DataT")


def _ok(data: DataT) -> SuccessResponse[DataT]:
    """Wrap a payload in the success envelope."""
    return SuccessResponse(data=data, timestamp=datetime.now(UTC))


# ============================================================================
# Auth
# ============================================================================


@router.get("/api/auth/token", response_model=SuccessResponse[TokenResponse])
async def get_access_token(
    auth: AuthenticatedUnchecked = Depends(require_authenticated_no_quota),
) -> SuccessResponse[TokenResponse]:
    """Issue a backend access token for clients that cannot hold the session token."""
    if not settings.jwt_secret:
        raise ServiceUnavailableError("Access token issuance is not configured")

    name = auth.claim.name or auth.user.display_name
    issued = issue_access_token(
        auth.email,
        name,
        secret=settings.jwt_secret,
        issuer=settings.jwt_issuer,
        ttl=timedelta(days=settings.jwt_expires_days),
    )
    logger.info("access_token_issued", user_id=str(auth.user_id))
    return _ok(
        TokenResponse(
            access_token=issued.token,
            user=TokenUser(id=str(auth.user_id), email=auth.email, name=name),
            expires_at=issued.expires_at,
        )
    )


# ============================================================================
# Usage
# ============================================================================


@router.get("/api/usage", response_model=SuccessResponse[UsageResponse])
async def get_usage(
    auth: AuthenticatedUnchecked = Depends(require_authenticated_no_quota),
) -> SuccessResponse[UsageResponse]:
    """Usage in the current window. Available even when the ceiling is reached."""
    quota = QuotaLedger.snapshot(auth.user)
    return _ok(
        UsageResponse(
            user_id=str(auth.user_id),
            daily_count=quota.usage_count,
            daily_limit=quota.limit,
            monthly_count=quota.usage_count,
            monthly_limit=quota.limit,
            remaining=quota.remaining,
            reset_at=quota.reset_at,
            plan=quota.plan,
        )
    )


# ============================================================================
# Billing
# ============================================================================


@router.post("/api/billing/checkout", response_model=SuccessResponse[CheckoutResponse])
async def create_checkout(
    request: CheckoutRequest,
    auth: AuthenticatedUnchecked = Depends(require_authenticated_no_quota),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
) -> SuccessResponse[CheckoutResponse]:
    """Create a provider subscription for the checkout widget."""
    session = await subscriptions.create_checkout(auth.user, Plan(request.plan))
    return _ok(
        CheckoutResponse(
            subscription_id=session.subscription_id,
            key_id=session.key_id,
            plan=session.plan,
            short_url=session.short_url,
        )
    )


@router.post("/api/billing/verify", response_model=SuccessResponse[VerifyPaymentResponse])
async def verify_payment(
    request: VerifyPaymentRequest,
    auth: AuthenticatedUnchecked = Depends(require_authenticated_no_quota),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
) -> SuccessResponse[VerifyPaymentResponse]:
    """Confirm a completed checkout and activate the plan."""
    user = await subscriptions.verify_payment(
        auth.user,
        payment_id=request.razorpay_payment_id,
        subscription_id=request.razorpay_subscription_id,
        signature=request.razorpay_signature,
    )
    return _ok(
        VerifyPaymentResponse(
            success=True,
            plan=Plan(user.plan),
            subscription_id=request.razorpay_subscription_id,
            subscription_period_end=user.subscription_period_end,
        )
    )


@router.get("/api/billing/status", response_model=SuccessResponse[BillingStatusResponse])
async def get_billing_status(
    auth: AuthenticatedUnchecked = Depends(require_authenticated_no_quota),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
) -> SuccessResponse[BillingStatusResponse]:
    billing = await subscriptions.status(auth.user)
    return _ok(
        BillingStatusResponse(
            plan=billing.plan,
            subscription_id=billing.subscription_id,
            subscription_status=billing.subscription_status,
            subscription_period_end=billing.subscription_period_end,
            has_billing_customer=billing.has_billing_customer,
            usage_count=billing.quota.usage_count,
            limit=billing.quota.limit,
            reset_at=billing.quota.reset_at,
        )
    )


# ============================================================================
# Provider Webhook
# ============================================================================


@router.post("/api/billing/webhook", response_model=WebhookAckResponse)
@router.post("/api/upgrade", response_model=WebhookAckResponse, include_in_schema=False)
async def payment_webhook(
    request: Request,
    intake: WebhookIntake = Depends(get_webhook_intake),
    x_razorpay_signature: str | None = Header(default=None),
    x_razorpay_event_id: str | None = Header(default=None),
) -> WebhookAckResponse:
    """
    Handle payment provider webhooks.

    Signature is checked over the raw body. Duplicate deliveries are
    acknowledged without being applied again.
    """
    if not settings.razorpay_webhook_secret:
        raise PaymentProviderNotConfiguredError()

    payload = await request.body()
    await intake.handle(payload, x_razorpay_signature, delivery_id=x_razorpay_event_id)
    return WebhookAckResponse()


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse | JSONResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    now = datetime.now(UTC).isoformat()
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=HealthResponse(
                status="unhealthy", database="disconnected", timestamp=now
            ).model_dump(),
        )

    return HealthResponse(status="healthy", database="connected", timestamp=now)
