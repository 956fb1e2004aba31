"""
Exception Classes - Strongly typed exception hierarchy.

Every error that can reach a caller carries an HTTP status and a stable
error code. Structured details are typed attributes, rendered to the
response envelope by the handler in ``promptlens.main``.
"""

from datetime import datetime
from typing import Any

from promptlens.models.api import Plan


def plan_display_name(plan: str) -> str:
    parsed = Plan.parse(plan)
    return parsed.display_name if parsed else plan


class AccessCoreError(Exception):
    """Base exception for all access-core errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    @property
    def details(self) -> dict[str, Any] | None:
        """Structured details for the error envelope."""
        return None


# ============================================================================
# Authentication
# ============================================================================


class AuthenticationRequiredError(AccessCoreError):
    """Raised when no bearer credential is supplied."""

    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "No authorization header provided") -> None:
        super().__init__(message)


class TokenVerificationError(AccessCoreError):
    """Base class for bearer token failures."""

    status_code = 401
    code = "INVALID_TOKEN"
    reason = "InvalidFormat"

    def __init__(self, message: str, diagnostics: tuple[str, ...] = ()) -> None:
        self.diagnostics = diagnostics
        super().__init__(message)


class InvalidTokenFormatError(TokenVerificationError):
    """Token is not a 3- or 5-segment compact credential, or cannot be decoded."""

    reason = "InvalidFormat"


class InvalidTokenSignatureError(TokenVerificationError):
    """Token signature does not match the configured secret."""

    reason = "InvalidSignature"


class TokenExpiredError(TokenVerificationError):
    """Token expiry is in the past."""

    code = "TOKEN_EXPIRED"
    reason = "Expired"

    def __init__(self, expired_at: datetime | None = None) -> None:
        self.expired_at = expired_at
        super().__init__("Token expired")


class MissingClaimError(TokenVerificationError):
    """A required claim is absent from an otherwise valid token."""

    reason = "MissingClaim"

    def __init__(self, claim: str) -> None:
        self.claim = claim
        super().__init__(f"Invalid token payload: missing {claim}")


# ============================================================================
# Quota
# ============================================================================


class QuotaExceededError(AccessCoreError):
    """Raised when a user has exhausted the ceiling of the current window."""

    status_code = 429
    code = "QUOTA_EXCEEDED"

    def __init__(self, usage_count: int, limit: int, plan: str, reset_at: datetime) -> None:
        self.usage_count = usage_count
        self.limit = limit
        self.plan = plan
        self.reset_at = reset_at
        super().__init__(
            f"Daily limit reached. You have used {usage_count}/{limit} requests. "
            f"Quota resets at {reset_at.isoformat()}"
        )

    @property
    def details(self) -> dict[str, Any]:
        return {
            "usageCount": self.usage_count,
            "limit": self.limit,
            "plan": self.plan,
            "planName": plan_display_name(self.plan),
            "resetAt": self.reset_at.isoformat(),
        }


# ============================================================================
# Users
# ============================================================================


class UserNotFoundError(AccessCoreError):
    """Raised when a user cannot be resolved."""

    status_code = 404
    code = "USER_NOT_FOUND"

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"User not found: {identifier}")


# ============================================================================
# Webhooks and payments
# ============================================================================


class MissingSignatureError(AccessCoreError):
    """Raised when a signed request arrives without its signature."""

    status_code = 400
    code = "MISSING_SIGNATURE"

    def __init__(self, message: str = "No webhook signature found") -> None:
        super().__init__(message)


class WebhookSignatureError(AccessCoreError):
    """Raised when the webhook signature does not match the raw body."""

    status_code = 400
    code = "VERIFICATION_FAILED"

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message)


class MalformedPayloadError(AccessCoreError):
    """Raised when a verified webhook body is not a recognizable event."""

    status_code = 400
    code = "MISSING_DATA"

    def __init__(self, message: str) -> None:
        super().__init__(f"Malformed webhook payload: {message}")


class MissingDataError(AccessCoreError):
    """Raised when required identifiers are absent from a request or event."""

    status_code = 400
    code = "MISSING_DATA"


class PaymentVerificationError(AccessCoreError):
    """Raised when a client-side payment confirmation fails verification."""

    status_code = 400
    code = "VERIFICATION_FAILED"

    def __init__(self, message: str = "Payment verification failed") -> None:
        super().__init__(message)


class ServiceUnavailableError(AccessCoreError):
    """Raised when a dependency outside this service cannot be used."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"


class PaymentProviderError(ServiceUnavailableError):
    """Raised when the payment provider is unreachable or misconfigured."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Payment provider error: {message}")


class PaymentProviderNotConfiguredError(PaymentProviderError):
    """Raised when billing routes are hit without provider credentials."""

    def __init__(self) -> None:
        super().__init__("payment provider is not configured")


# ============================================================================
# Storage
# ============================================================================


class StorageUnavailableError(ServiceUnavailableError):
    """Raised when the database cannot complete an operation."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Storage unavailable during {operation}")
