"""
Razorpay Payment Provider Implementation.

Talks to the Razorpay REST API over httpx with basic auth. One attempt per
call with a short timeout; failures surface as PaymentProviderError.

NO DICTIONARIES - Responses are parsed into typed models before use.
"""

import hashlib
import hmac
import time
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import ValidationError
from structlog import get_logger

from promptlens.exceptions import PaymentProviderError
from promptlens.models.api import PaymentEntity, SubscriptionEntity
from promptlens.observability.metrics import metrics
from promptlens.services.payment_provider import (
    ProviderPayment,
    ProviderSubscription,
    SubscriptionRequest,
)

logger = get_logger(__name__)


def _from_epoch(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def _to_subscription(entity: SubscriptionEntity) -> ProviderSubscription:
    return ProviderSubscription(
        subscription_id=entity.id,
        plan_id=entity.plan_id,
        status=entity.status,
        customer_id=entity.customer_id,
        current_end=_from_epoch(entity.current_end),
        short_url=entity.short_url,
        notes={str(k): str(v) for k, v in entity.notes.items()},
    )


class RazorpayProvider:
    """
    Razorpay payment provider implementation.

    Implements the PaymentProvider protocol.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        api_base: str = "https://api.razorpay.com/v1",
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.key_id = key_id
        self._key_secret = key_secret
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def verify_payment_signature(self, payment_id: str, subscription_id: str, signature: str) -> bool:
        """Checkout signature is hex HMAC-SHA256 of "payment_id|subscription_id"."""
        expected = hmac.new(
            self._key_secret.encode("utf-8"),
            f"{payment_id}|{subscription_id}".encode(),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected.encode(), signature.encode("utf-8", "replace"))

    async def _request(
        self, operation: str, method: str, path: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        start = time.perf_counter()
        try:
            response = await self.http_client.request(
                method,
                f"{self.api_base}{path}",
                json=json,
                auth=(self.key_id, self._key_secret),
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            metrics.record_provider_request(operation, False, time.perf_counter() - start)
            logger.error(
                "razorpay_request_rejected",
                operation=operation,
                status_code=exc.response.status_code,
                body=exc.response.text[:500],
            )
            raise PaymentProviderError(
                f"{operation} returned HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            metrics.record_provider_request(operation, False, time.perf_counter() - start)
            logger.error(
                "razorpay_request_failed",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"{operation} failed: {type(exc).__name__}") from exc

        metrics.record_provider_request(operation, True, time.perf_counter() - start)
        if not isinstance(body, dict):
            raise PaymentProviderError(f"{operation} returned an unexpected body")
        return body

    async def fetch_payment(self, payment_id: str) -> ProviderPayment:
        body = await self._request("fetch_payment", "GET", f"/payments/{payment_id}")
        try:
            entity = PaymentEntity.model_validate(body)
        except ValidationError as exc:
            raise PaymentProviderError("fetch_payment returned an invalid payment") from exc

        logger.info("razorpay_payment_fetched", payment_id=entity.id, status=entity.status)
        return ProviderPayment(
            payment_id=entity.id,
            status=entity.status or "unknown",
            subscription_id=entity.subscription_id,
            customer_id=entity.customer_id,
        )

    async def fetch_subscription(self, subscription_id: str) -> ProviderSubscription:
        body = await self._request(
            "fetch_subscription", "GET", f"/subscriptions/{subscription_id}"
        )
        try:
            entity = SubscriptionEntity.model_validate(body)
        except ValidationError as exc:
            raise PaymentProviderError(
                "fetch_subscription returned an invalid subscription"
            ) from exc

        logger.info(
            "razorpay_subscription_fetched", subscription_id=entity.id, status=entity.status
        )
        return _to_subscription(entity)

    async def create_subscription(self, request: SubscriptionRequest) -> ProviderSubscription:
        logger.info("creating_razorpay_subscription", plan_id=request.plan_id)
        body = await self._request(
            "create_subscription",
            "POST",
            "/subscriptions",
            json={
                "plan_id": request.plan_id,
                "total_count": request.total_count,
                "customer_notify": 1,
                "notes": request.notes,
            },
        )
        try:
            entity = SubscriptionEntity.model_validate(body)
        except ValidationError as exc:
            raise PaymentProviderError(
                "create_subscription returned an invalid subscription"
            ) from exc

        logger.info("razorpay_subscription_created", subscription_id=entity.id)
        return _to_subscription(entity)
