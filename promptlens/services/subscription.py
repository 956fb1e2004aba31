"""
Subscription State Manager - Plan transitions for a user.

States: free, active(plan, period_end), cancelled -> free.

activate, cancel and renew are single UPDATE ... RETURNING statements.
activate is guarded so that re-applying the same activation (the
synchronous verify call followed by the provider webhook) leaves the row
and its usage window untouched.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from promptlens.config import Settings, settings as default_settings
from promptlens.db.models import User
from promptlens.exceptions import (
    MissingDataError,
    PaymentProviderNotConfiguredError,
    PaymentVerificationError,
    StorageUnavailableError,
    UserNotFoundError,
)
from promptlens.models.api import Plan, SubscriptionStatus
from promptlens.models.domain import BillingStatus, CheckoutSession
from promptlens.observability.metrics import metrics
from promptlens.observability.tracing import trace_operation
from promptlens.services.payment_provider import PaymentProvider, SubscriptionRequest
from promptlens.services.quota import QuotaLedger

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def parse_user_id(value: str | None) -> UUID | None:
    """UUID from provider metadata, or None when absent or malformed."""
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


class SubscriptionManager:
    """Applies subscription transitions to user rows."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider | None = None,
        config: Settings = default_settings,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.session = session
        self.provider = provider
        self.config = config
        self._now = now

    # ========================================================================
    # Plan mapping
    # ========================================================================

    def provider_plan_id(self, plan: Plan) -> str:
        """Configured provider plan id for a paid plan."""
        if plan == Plan.PRO_MONTHLY:
            return self.config.razorpay_pro_monthly_plan_id
        if plan == Plan.PRO_YEARLY:
            return self.config.razorpay_pro_yearly_plan_id
        raise ValueError(f"No provider plan for {plan.value}")

    def plan_for_provider_plan_id(self, plan_id: str | None) -> Plan | None:
        if not plan_id:
            return None
        if plan_id == self.config.razorpay_pro_monthly_plan_id:
            return Plan.PRO_MONTHLY
        if plan_id == self.config.razorpay_pro_yearly_plan_id:
            return Plan.PRO_YEARLY
        return None

    def resolve_plan(self, notes_plan: str | None, plan_id: str | None) -> Plan | None:
        """Paid plan from subscription notes, else from the provider plan id."""
        plan = Plan.parse(notes_plan)
        if plan is not None and plan.is_paid:
            return plan
        return self.plan_for_provider_plan_id(plan_id)

    def _require_provider(self) -> PaymentProvider:
        if self.provider is None:
            raise PaymentProviderNotConfiguredError()
        return self.provider

    # ========================================================================
    # Transitions
    # ========================================================================

    def build_activate(
        self,
        user_id: UUID,
        plan: Plan,
        subscription_id: str,
        period_end: datetime | None,
        now: datetime,
    ):
        """UPDATE that only matches when this activation has not been applied yet."""
        already_applied = and_(
            User.subscription_id.is_not_distinct_from(subscription_id),
            User.subscription_status.is_not_distinct_from(SubscriptionStatus.ACTIVE.value),
            User.plan == plan.value,
        )
        return (
            update(User)
            .where(User.id == user_id, ~already_applied)
            .values(
                plan=plan.value,
                subscription_id=subscription_id,
                subscription_status=SubscriptionStatus.ACTIVE.value,
                subscription_period_end=period_end,
                usage_count=0,
                last_reset_at=now,
                updated_at=now,
            )
            .returning(User)
        )

    async def activate(
        self,
        *,
        plan: Plan,
        subscription_id: str,
        user_id: UUID | None = None,
        email: str | None = None,
        period_end: datetime | None = None,
    ) -> User:
        """
        Move a user onto a paid plan and grant a fresh usage window.

        Idempotent: when the same plan and subscription are already active,
        the current row is returned without a second reset.

        Raises:
            ValueError: If plan is not a paid plan
            MissingDataError: If neither user_id nor email is given
            UserNotFoundError: If the user does not exist
        """
        if not plan.is_paid:
            raise ValueError(f"Cannot activate non-paid plan: {plan.value}")
        if not subscription_id:
            raise MissingDataError("subscription_id is required to activate")

        try:
            if user_id is None:
                if not email:
                    raise MissingDataError("A user id or email is required to activate")
                found = await self.session.execute(
                    select(User.id).where(User.email == email.strip().lower())
                )
                user_id = found.scalar_one_or_none()
                if user_id is None:
                    raise UserNotFoundError(email)

            now = self._now()
            result = await self.session.execute(
                self.build_activate(user_id, plan, subscription_id, period_end, now),
                execution_options={"populate_existing": True},
            )
            user = result.scalar_one_or_none()
            applied = user is not None
            if user is None:
                current = await self.session.execute(
                    select(User).where(User.id == user_id),
                    execution_options={"populate_existing": True},
                )
                user = current.scalar_one_or_none()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("subscription_activate_failed", subscription_id=subscription_id, error=str(exc))
            raise StorageUnavailableError("activate") from exc

        if user is None:
            raise UserNotFoundError(str(user_id))

        if applied:
            metrics.record_subscription_transition("activate", plan.value)
            logger.info(
                "subscription_activated",
                user_id=str(user_id),
                plan=plan.value,
                subscription_id=subscription_id,
            )
        else:
            logger.info(
                "subscription_activation_already_applied",
                user_id=str(user_id),
                subscription_id=subscription_id,
            )
        return user

    async def cancel(
        self, subscription_id: str, status: str = SubscriptionStatus.CANCELLED.value
    ) -> User | None:
        """
        Return the subscriber to the free plan. Usage counters are untouched.

        Returns None when no user holds this subscription.
        """
        now = self._now()
        stmt = (
            update(User)
            .where(User.subscription_id == subscription_id)
            .values(plan=Plan.FREE.value, subscription_status=status, updated_at=now)
            .returning(User)
        )
        try:
            result = await self.session.execute(
                stmt, execution_options={"populate_existing": True}
            )
            user = result.scalars().first()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("subscription_cancel_failed", subscription_id=subscription_id, error=str(exc))
            raise StorageUnavailableError("cancel") from exc

        if user is None:
            logger.warning("subscription_cancel_user_not_found", subscription_id=subscription_id)
            return None

        metrics.record_subscription_transition("cancel", Plan.FREE.value)
        logger.info("subscription_cancelled", user_id=str(user.id), subscription_id=subscription_id)
        return user

    async def renew(self, subscription_id: str, period_end: datetime | None) -> User | None:
        """Record a successful recurring charge: refresh period end, keep usage."""
        values: dict[str, object] = {
            "subscription_status": SubscriptionStatus.ACTIVE.value,
            "updated_at": self._now(),
        }
        if period_end is not None:
            values["subscription_period_end"] = period_end

        stmt = (
            update(User)
            .where(User.subscription_id == subscription_id)
            .values(**values)
            .returning(User)
        )
        try:
            result = await self.session.execute(
                stmt, execution_options={"populate_existing": True}
            )
            user = result.scalars().first()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("subscription_renew_failed", subscription_id=subscription_id, error=str(exc))
            raise StorageUnavailableError("renew") from exc

        if user is None:
            logger.warning("subscription_renew_user_not_found", subscription_id=subscription_id)
            return None

        metrics.record_subscription_transition("renew", user.plan)
        logger.info(
            "subscription_renewed",
            user_id=str(user.id),
            subscription_id=subscription_id,
            period_end=period_end.isoformat() if period_end else None,
        )
        return user

    async def record_payment_failure(
        self, subscription_id: str | None, payment_id: str | None, reason: str | None
    ) -> None:
        """A failed charge is recorded only; access is not revoked."""
        metrics.record_subscription_transition("payment_failed", "unchanged")
        logger.warning(
            "subscription_payment_failed",
            subscription_id=subscription_id,
            payment_id=payment_id,
            reason=reason,
        )

    # ========================================================================
    # Checkout and verification
    # ========================================================================

    async def verify_payment(
        self, user: User, payment_id: str, subscription_id: str, signature: str
    ) -> User:
        """
        Confirm a checkout completed by the client and activate the plan.

        The signature is checked before the provider is contacted.

        Raises:
            PaymentVerificationError: Bad signature, unpaid payment or foreign subscription
            MissingDataError: If the plan cannot be resolved
            PaymentProviderError: If the provider cannot be reached
        """
        provider = self._require_provider()

        with trace_operation(
            "payment_verification", user_id=str(user.id), subscription_id=subscription_id
        ):
            if not provider.verify_payment_signature(payment_id, subscription_id, signature):
                metrics.record_payment_verification("bad_signature")
                logger.warning(
                    "payment_signature_mismatch",
                    user_id=str(user.id),
                    payment_id=payment_id,
                    subscription_id=subscription_id,
                )
                raise PaymentVerificationError("Invalid payment signature")

            payment = await provider.fetch_payment(payment_id)
            subscription = await provider.fetch_subscription(subscription_id)

            if not payment.is_successful:
                metrics.record_payment_verification("not_paid")
                logger.warning(
                    "payment_not_captured", payment_id=payment_id, status=payment.status
                )
                raise PaymentVerificationError(f"Payment not completed (status: {payment.status})")

            owner = subscription.notes.get("userId")
            if owner and owner != str(user.id):
                metrics.record_payment_verification("owner_mismatch")
                logger.warning(
                    "subscription_owner_mismatch",
                    user_id=str(user.id),
                    subscription_id=subscription_id,
                )
                raise PaymentVerificationError("Subscription does not belong to this user")

            plan = self.resolve_plan(subscription.notes.get("plan"), subscription.plan_id)
            if plan is None:
                metrics.record_payment_verification("unknown_plan")
                raise MissingDataError(
                    f"Cannot determine plan for subscription {subscription_id}"
                )

            activated = await self.activate(
                plan=plan,
                subscription_id=subscription_id,
                user_id=user.id,
                period_end=subscription.current_end,
            )

        metrics.record_payment_verification("verified")
        return activated

    async def create_checkout(self, user: User, plan: Plan) -> CheckoutSession:
        """Create a provider subscription the client checkout widget can open."""
        if not plan.is_paid:
            raise ValueError(f"Cannot check out plan: {plan.value}")
        provider = self._require_provider()

        subscription = await provider.create_subscription(
            SubscriptionRequest(
                plan_id=self.provider_plan_id(plan),
                total_count=self.config.razorpay_subscription_total_count,
                notes={"userId": str(user.id), "email": user.email, "plan": plan.value},
            )
        )

        if subscription.customer_id and subscription.customer_id != user.billing_customer_id:
            try:
                await self.session.execute(
                    update(User)
                    .where(User.id == user.id)
                    .values(billing_customer_id=subscription.customer_id, updated_at=self._now())
                )
                await self.session.commit()
            except SQLAlchemyError as exc:
                await self.session.rollback()
                logger.error("billing_customer_update_failed", user_id=str(user.id), error=str(exc))
                raise StorageUnavailableError("create_checkout") from exc

        logger.info(
            "checkout_created",
            user_id=str(user.id),
            plan=plan.value,
            subscription_id=subscription.subscription_id,
        )
        return CheckoutSession(
            subscription_id=subscription.subscription_id,
            key_id=provider.key_id,
            plan=plan,
            short_url=subscription.short_url,
        )

    async def status(self, user: User) -> BillingStatus:
        """Plan, subscription and usage position; resets a stale window first."""
        ledger = QuotaLedger(self.session, now=self._now)
        user = await ledger.reset_if_stale(user)
        quota = ledger.snapshot(user)
        return BillingStatus(
            user_id=user.id,
            plan=quota.plan,
            subscription_id=user.subscription_id,
            subscription_status=user.subscription_status,
            subscription_period_end=user.subscription_period_end,
            has_billing_customer=bool(user.billing_customer_id),
            quota=quota,
        )

