"""
Webhook Intake - Signature check, dedup and dispatch of provider events.

Order of operations per delivery:
1. signature over the exact raw bytes
2. parse into ProviderEvent
3. ledger lookup; a live entry means the effect already happened
4. dispatch to the SubscriptionManager
5. record the ledger entry, only after dispatch succeeded
"""

import hashlib
import hmac
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Literal
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from promptlens.db.models import ProcessedEvent
from promptlens.exceptions import (
    MalformedPayloadError,
    MissingDataError,
    MissingSignatureError,
    StorageUnavailableError,
    WebhookSignatureError,
)
from promptlens.models.api import ProviderEvent, SubscriptionEntity
from promptlens.models.domain import WebhookEventKind, WebhookOutcome
from promptlens.observability.metrics import metrics
from promptlens.services.subscription import SubscriptionManager, parse_user_id

logger = get_logger(__name__)

EventKeyStrategy = Literal["delivery_id", "event_type"]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def derive_event_key(event: ProviderEvent, raw_body: bytes, strategy: EventKeyStrategy) -> str:
    """
    Ledger key for a delivery. Only signed content feeds the key.

    delivery_id: the event id from the body, else a digest of the body.
    event_type: the event name itself; distinct events of one type collide.
    """
    if strategy == "event_type":
        return event.event
    if event.id:
        return event.id
    return "sha256:" + hashlib.sha256(raw_body).hexdigest()


def _period_end(subscription: SubscriptionEntity | None) -> datetime | None:
    if subscription is None or subscription.current_end is None:
        return None
    return datetime.fromtimestamp(subscription.current_end, tz=UTC)


class WebhookIntake:
    """Verifies, deduplicates and applies provider webhook deliveries."""

    def __init__(
        self,
        session: AsyncSession,
        subscriptions: SubscriptionManager,
        webhook_secret: str,
        key_strategy: EventKeyStrategy = "delivery_id",
        retention: timedelta = timedelta(days=30),
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.session = session
        self.subscriptions = subscriptions
        self._secret = webhook_secret
        self.key_strategy = key_strategy
        self.retention = retention
        self._now = now

    async def handle(
        self, raw_body: bytes, signature_header: str | None, delivery_id: str | None = None
    ) -> WebhookOutcome:
        """
        Process one delivery.

        Raises:
            MissingSignatureError: No signature header
            WebhookSignatureError: Signature does not match the raw body
            MalformedPayloadError: Verified body is not a provider event
            MissingDataError: Event lacks the identifiers its transition needs
        """
        if not signature_header or not signature_header.strip():
            metrics.record_webhook("unknown", "rejected")
            raise MissingSignatureError()

        expected = compute_signature(self._secret, raw_body)
        received = signature_header.strip().encode("utf-8", "replace")
        if not hmac.compare_digest(expected.encode(), received):
            metrics.record_webhook("unknown", "rejected")
            logger.warning("webhook_signature_invalid", body_length=len(raw_body))
            raise WebhookSignatureError()

        if not raw_body:
            raise MalformedPayloadError("empty body")
        try:
            event = ProviderEvent.model_validate_json(raw_body)
        except ValidationError as exc:
            metrics.record_webhook("unknown", "malformed")
            logger.warning("webhook_payload_malformed", error_count=exc.error_count())
            raise MalformedPayloadError(f"{exc.error_count()} validation error(s)") from exc

        kind = WebhookEventKind.from_event_name(event.event)
        event_key = derive_event_key(event, raw_body, self.key_strategy)

        if await self._already_processed(event_key):
            metrics.record_webhook(event.event, "duplicate")
            logger.info(
                "webhook_duplicate_skipped",
                event_key=event_key,
                event_type=event.event,
                delivery_id=delivery_id,
            )
            return WebhookOutcome(
                event_key=event_key, event_type=event.event, kind=kind, duplicate=True
            )

        try:
            user_id = await self._dispatch(kind, event)
        except Exception:
            metrics.record_webhook(event.event, "failed")
            logger.error(
                "webhook_dispatch_failed", event_key=event_key, event_type=event.event, exc_info=True
            )
            raise

        await self._record(event_key, event.event)
        metrics.record_webhook(event.event, "processed")
        logger.info(
            "webhook_processed",
            event_key=event_key,
            event_type=event.event,
            delivery_id=delivery_id,
            kind=kind.name,
            user_id=str(user_id) if user_id else None,
        )
        return WebhookOutcome(
            event_key=event_key,
            event_type=event.event,
            kind=kind,
            duplicate=False,
            user_id=user_id,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, kind: WebhookEventKind, event: ProviderEvent) -> UUID | None:
        subscription = event.subscription
        payment = event.payment

        match kind:
            case WebhookEventKind.ACTIVATED | WebhookEventKind.AUTHENTICATED:
                if subscription is None:
                    raise MissingDataError(f"{event.event} carries no subscription")
                user_id = parse_user_id(subscription.notes.get("userId"))
                if user_id is None:
                    raise MissingDataError(f"{event.event} carries no userId in notes")
                plan = self.subscriptions.resolve_plan(
                    subscription.notes.get("plan"), subscription.plan_id
                )
                if plan is None:
                    raise MissingDataError(f"{event.event} carries no resolvable plan")
                user = await self.subscriptions.activate(
                    plan=plan,
                    subscription_id=subscription.id,
                    user_id=user_id,
                    period_end=_period_end(subscription),
                )
                return user.id

            case WebhookEventKind.CHARGED:
                if subscription is None:
                    raise MissingDataError(f"{event.event} carries no subscription")
                user = await self.subscriptions.renew(subscription.id, _period_end(subscription))
                return user.id if user else None

            case WebhookEventKind.COMPLETED | WebhookEventKind.CANCELLED:
                if subscription is None:
                    raise MissingDataError(f"{event.event} carries no subscription")
                user = await self.subscriptions.cancel(subscription.id)
                return user.id if user else None

            case WebhookEventKind.PAYMENT_FAILED:
                await self.subscriptions.record_payment_failure(
                    subscription_id=(
                        payment.subscription_id if payment else None
                    ) or (subscription.id if subscription else None),
                    payment_id=payment.id if payment else None,
                    reason=payment.error_description if payment else None,
                )
                return None

            case WebhookEventKind.UNHANDLED:
                logger.info("webhook_event_unhandled", event_type=event.event)
                return None

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def _already_processed(self, event_key: str) -> bool:
        try:
            result = await self.session.execute(
                select(ProcessedEvent.event_key).where(
                    ProcessedEvent.event_key == event_key,
                    ProcessedEvent.expires_at > self._now(),
                )
            )
        except SQLAlchemyError as exc:
            logger.error("webhook_ledger_lookup_failed", event_key=event_key, error=str(exc))
            raise StorageUnavailableError("webhook_ledger_lookup") from exc
        return result.scalar_one_or_none() is not None

    def build_record(self, event_key: str, event_type: str, now: datetime):
        """Upsert so an expired entry for the same key is refreshed."""
        expires_at = now + self.retention
        stmt = insert(ProcessedEvent).values(
            event_key=event_key,
            event_type=event_type,
            processed_at=now,
            expires_at=expires_at,
        )
        return stmt.on_conflict_do_update(
            index_elements=[ProcessedEvent.event_key],
            set_={
                "event_type": stmt.excluded.event_type,
                "processed_at": stmt.excluded.processed_at,
                "expires_at": stmt.excluded.expires_at,
            },
        )

    async def _record(self, event_key: str, event_type: str) -> None:
        try:
            await self.session.execute(self.build_record(event_key, event_type, self._now()))
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("webhook_ledger_write_failed", event_key=event_key, error=str(exc))
            raise StorageUnavailableError("webhook_ledger_write") from exc
