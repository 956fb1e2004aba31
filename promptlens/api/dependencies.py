"""
FastAPI Dependencies - Authentication, quota and service wiring.

NO DICTIONARIES - All dependencies return typed objects.

Two authentication entry points exist. require_authenticated enforces the
quota ceiling; require_authenticated_no_quota only rolls a stale window
forward, so a user at the ceiling can still read usage and billing state.
The variant a route receives is visible in its signature.
"""

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from uuid import UUID

import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from promptlens.config import settings
from promptlens.db.models import User
from promptlens.db.session import get_write_db
from promptlens.exceptions import AuthenticationRequiredError, UserNotFoundError
from promptlens.models.domain import QuotaStatus, VerifiedClaim
from promptlens.services.identity import IdentityProvisioner
from promptlens.services.payment_provider import PaymentProvider
from promptlens.services.quota import QuotaLedger
from promptlens.services.razorpay_provider import RazorpayProvider
from promptlens.services.subscription import SubscriptionManager
from promptlens.services.tokens import TokenVerifier
from promptlens.services.webhook_intake import WebhookIntake

logger = get_logger(__name__)

# Bearer token scheme; a missing header is reported as UNAUTHORIZED by us
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# Authentication results
# ============================================================================


@dataclass(frozen=True)
class AuthenticatedEnforced:
    """Caller admitted under the quota ceiling."""

    user_id: UUID
    email: str
    user: User
    quota: QuotaStatus
    claim: VerifiedClaim


@dataclass(frozen=True)
class AuthenticatedUnchecked:
    """Caller authenticated without quota enforcement."""

    user_id: UUID
    email: str
    user: User
    claim: VerifiedClaim


# ============================================================================
# Shared capabilities
# ============================================================================


@lru_cache
def get_token_verifier() -> TokenVerifier:
    """Process-wide verifier; holds only immutable secrets."""
    return TokenVerifier(
        session_secret=settings.nextauth_secret,
        token_secret=settings.jwt_secret,
        leeway_seconds=settings.token_leeway_seconds,
    )


@lru_cache
def _razorpay_provider() -> RazorpayProvider:
    return RazorpayProvider(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        api_base=settings.razorpay_api_base,
        timeout_seconds=settings.provider_timeout_seconds,
    )


def get_payment_provider() -> PaymentProvider | None:
    """Configured payment provider, or None when credentials are absent."""
    if not settings.payment_provider_configured:
        return None
    return _razorpay_provider()


async def close_payment_provider() -> None:
    if _razorpay_provider.cache_info().currsize:
        await _razorpay_provider().aclose()
        _razorpay_provider.cache_clear()


def get_subscription_manager(
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider | None = Depends(get_payment_provider),
) -> SubscriptionManager:
    return SubscriptionManager(db, provider=provider)


def get_webhook_intake(
    db: AsyncSession = Depends(get_write_db),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
) -> WebhookIntake:
    return WebhookIntake(
        db,
        subscriptions,
        webhook_secret=settings.razorpay_webhook_secret,
        key_strategy=settings.webhook_event_key_strategy,
        retention=timedelta(days=settings.processed_event_retention_days),
    )


# ============================================================================
# Authentication
# ============================================================================


async def _authenticate(
    credentials: HTTPAuthorizationCredentials | None,
    db: AsyncSession,
    verifier: TokenVerifier,
) -> tuple[VerifiedClaim, User]:
    if credentials is None or not credentials.credentials.strip():
        raise AuthenticationRequiredError()

    claim = verifier.verify(credentials.credentials)
    user = await IdentityProvisioner(db).find_or_create(claim.email, claim.name)
    user = await QuotaLedger(db).reset_if_stale(user)

    structlog.contextvars.bind_contextvars(user_id=str(user.id))
    return claim, user


async def require_authenticated(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_write_db),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> AuthenticatedEnforced:
    """
    Authenticate the caller and admit one more metered action.

    Raises:
        AuthenticationRequiredError: No bearer credential (401 UNAUTHORIZED)
        TokenVerificationError: Bad credential (401 INVALID_TOKEN / TOKEN_EXPIRED)
        QuotaExceededError: Ceiling reached (429 QUOTA_EXCEEDED)
    """
    claim, user = await _authenticate(credentials, db, verifier)
    quota = QuotaLedger(db).check(user)
    return AuthenticatedEnforced(
        user_id=user.id, email=user.email, user=user, quota=quota, claim=claim
    )


async def require_authenticated_no_quota(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_write_db),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> AuthenticatedUnchecked:
    """Authenticate the caller; the quota ceiling is not consulted."""
    claim, user = await _authenticate(credentials, db, verifier)
    return AuthenticatedUnchecked(user_id=user.id, email=user.email, user=user, claim=claim)


# ============================================================================
# Collaborator helpers
# ============================================================================


async def enforce_quota(db: AsyncSession, user_id: UUID) -> QuotaStatus:
    """
    Quota gate for collaborators that authenticate on their own.

    Raises:
        UserNotFoundError: Unknown user (404)
        QuotaExceededError: Ceiling reached (429)
    """
    user = await IdentityProvisioner(db).get_by_id(user_id)
    if user is None:
        raise UserNotFoundError(str(user_id))
    ledger = QuotaLedger(db)
    return ledger.check(await ledger.reset_if_stale(user))


async def record_usage(db: AsyncSession, user_id: UUID) -> User:
    """Count one action; call only after the protected action completed."""
    return await QuotaLedger(db).increment(user_id)
