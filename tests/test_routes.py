"""
Tests for API Routes.

Exercises the HTTP surface through TestClient with the database and the
payment provider replaced by fixtures.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import (
    WEBHOOK_SECRET,
    FakePaymentProvider,
    auth_header,
    create_mock_user,
    make_encrypted_token,
    make_result,
    make_signed_token,
    session_claims,
)
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from promptlens.api.dependencies import AuthenticatedEnforced, record_usage, require_authenticated
from promptlens.db.session import get_write_db
from promptlens.exceptions import AccessCoreError
from promptlens.services.webhook_intake import compute_signature


def signed_user_db(db_session: AsyncMock, user: MagicMock) -> None:
    """Make the identity upsert return this user."""
    db_session.execute = AsyncMock(return_value=make_result(one=(user, False), scalar=user))


# ============================================================================
# Authentication errors
# ============================================================================


class TestAuthenticationErrors:
    def test_missing_header(self, client: TestClient):
        response = client.get("/api/usage")

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"
        assert body["error"]["message"] == "No authorization header provided"
        assert "timestamp" in body

    def test_malformed_token(self, client: TestClient):
        response = client.get("/api/usage", headers=auth_header("not-a-token"))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_TOKEN"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_expired_token(self, client: TestClient):
        claims = session_claims()
        claims["exp"] = claims["iat"] - 60

        response = client.get("/api/usage", headers=auth_header(make_encrypted_token(claims)))

        assert response.status_code == 401
        body = response.json()
        assert body["error"]["code"] == "TOKEN_EXPIRED"
        assert body["error"]["message"] == "Token expired"


# ============================================================================
# Usage
# ============================================================================


class TestUsage:
    def test_usage_in_camel_case(self, client: TestClient, db_session: AsyncMock):
        user = create_mock_user(usage_count=2)
        signed_user_db(db_session, user)

        response = client.get("/api/usage", headers=auth_header(make_signed_token()))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert data["userId"] == str(user.id)
        assert data["dailyCount"] == 2
        assert data["dailyLimit"] == 4
        assert data["monthlyCount"] == 2
        assert data["monthlyLimit"] == 4
        assert data["remaining"] == 2
        assert data["plan"] == "free"
        assert "resetAt" in data

    def test_usage_available_at_limit(self, client: TestClient, db_session: AsyncMock):
        signed_user_db(db_session, create_mock_user(usage_count=4))

        response = client.get("/api/usage", headers=auth_header(make_signed_token()))

        assert response.status_code == 200
        assert response.json()["data"]["remaining"] == 0

    def test_session_token_accepted(self, client: TestClient, db_session: AsyncMock):
        signed_user_db(db_session, create_mock_user(plan="pro_yearly", usage_count=900))

        response = client.get(
            "/api/usage", headers=auth_header(make_encrypted_token(session_claims()))
        )

        assert response.status_code == 200
        assert response.json()["data"]["dailyLimit"] is None


# ============================================================================
# Access token
# ============================================================================


class TestAccessToken:
    def test_issues_token_for_session(self, client: TestClient, db_session: AsyncMock):
        user = create_mock_user(email="user@example.com")
        signed_user_db(db_session, user)

        response = client.get(
            "/api/auth/token",
            headers=auth_header(make_encrypted_token(session_claims(name="Pat"))),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"] == {"id": str(user.id), "email": "user@example.com", "name": "Pat"}
        assert data["accessToken"].count(".") == 2
        assert "expiresAt" in data

        # The issued token authenticates on its own
        again = client.get("/api/usage", headers=auth_header(data["accessToken"]))
        assert again.status_code == 200


# ============================================================================
# Billing
# ============================================================================


class TestBilling:
    def test_checkout(
        self, client: TestClient, db_session: AsyncMock, payment_provider: FakePaymentProvider
    ):
        signed_user_db(db_session, create_mock_user(usage_count=4))

        response = client.post(
            "/api/billing/checkout",
            json={"plan": "pro_monthly"},
            headers=auth_header(make_signed_token()),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["subscriptionId"] == "sub_new_001"
        assert data["keyId"] == payment_provider.key_id
        assert data["plan"] == "pro_monthly"

    def test_checkout_rejects_free_plan(self, client: TestClient, db_session: AsyncMock):
        signed_user_db(db_session, create_mock_user())

        response = client.post(
            "/api/billing/checkout", json={"plan": "free"}, headers=auth_header(make_signed_token())
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_verify_bad_signature(
        self, client: TestClient, db_session: AsyncMock, payment_provider: FakePaymentProvider
    ):
        signed_user_db(db_session, create_mock_user())
        payment_provider.signature_valid = False

        response = client.post(
            "/api/billing/verify",
            json={
                "razorpay_payment_id": "pay_1",
                "razorpay_subscription_id": "sub_1",
                "razorpay_signature": "bad",
            },
            headers=auth_header(make_signed_token()),
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VERIFICATION_FAILED"
        payment_provider.fetch_payment.assert_not_called()

    def test_status_not_quota_gated(self, client: TestClient, db_session: AsyncMock):
        signed_user_db(db_session, create_mock_user(usage_count=4))

        response = client.get("/api/billing/status", headers=auth_header(make_signed_token()))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["plan"] == "free"
        assert data["usageCount"] == 4
        assert data["hasBillingCustomer"] is False

    def test_provider_outage_is_generic_503(
        self, client: TestClient, db_session: AsyncMock, payment_provider: FakePaymentProvider
    ):
        from promptlens.exceptions import PaymentProviderError

        signed_user_db(db_session, create_mock_user())
        payment_provider.create_subscription.side_effect = PaymentProviderError("timeout")

        response = client.post(
            "/api/billing/checkout",
            json={"plan": "pro_yearly"},
            headers=auth_header(make_signed_token()),
        )

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "SERVICE_UNAVAILABLE"
        assert error["message"] == "Service temporarily unavailable"


# ============================================================================
# Webhook
# ============================================================================


class TestWebhook:
    body = json.dumps({"id": "evt_1", "event": "invoice.paid", "payload": {}}).encode()

    @pytest.mark.parametrize("path", ["/api/billing/webhook", "/api/upgrade"])
    def test_acknowledged(self, client: TestClient, db_session: AsyncMock, path: str):
        response = client.post(
            path,
            content=self.body,
            headers={"X-Razorpay-Signature": compute_signature(WEBHOOK_SECRET, self.body)},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        db_session.commit.assert_awaited_once()

    def test_missing_signature(self, client: TestClient):
        response = client.post("/api/billing/webhook", content=self.body)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MISSING_SIGNATURE"

    def test_bad_signature(self, client: TestClient):
        response = client.post(
            "/api/billing/webhook",
            content=self.body,
            headers={"X-Razorpay-Signature": "deadbeef"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VERIFICATION_FAILED"

    def test_non_ascii_signature(self, client: TestClient):
        response = client.post(
            "/api/billing/webhook",
            content=self.body,
            headers={"X-Razorpay-Signature": "caf\xe9".encode("latin-1")},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VERIFICATION_FAILED"

    def test_duplicate_acknowledged(self, client: TestClient, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=make_result(scalar="evt_1"))

        response = client.post(
            "/api/billing/webhook",
            content=self.body,
            headers={"X-Razorpay-Signature": compute_signature(WEBHOOK_SECRET, self.body)},
        )

        assert response.status_code == 200
        db_session.commit.assert_not_called()


# ============================================================================
# Health and routing
# ============================================================================


class TestHealthAndRouting:
    def test_health(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "connected"

    def test_health_database_down(self, client: TestClient, db_session: AsyncMock):
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("x")))

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_unknown_route(self, client: TestClient):
        response = client.get("/api/does-not-exist")

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "NOT_FOUND"
        assert error["message"] == "Route GET /api/does-not-exist not found"

    def test_request_id_echoed(self, client: TestClient):
        response = client.get("/health", headers={"X-Request-ID": "req-abc"})

        assert response.headers["X-Request-ID"] == "req-abc"


# ============================================================================
# Metered collaborator route
# ============================================================================


class TestMeteredRoute:
    """A collaborator route guarded by require_authenticated and record_usage."""

    @pytest.fixture
    def metered_client(self, db_session: AsyncMock) -> TestClient:
        from promptlens.main import access_core_exception_handler

        user = create_mock_user(usage_count=0)

        async def execute(stmt, *args, **kwargs):
            if stmt.is_insert:
                return make_result(one=(user, False))
            user.usage_count += 1
            return make_result(scalar=user)

        db_session.execute = AsyncMock(side_effect=execute)

        app = FastAPI()
        app.add_exception_handler(AccessCoreError, access_core_exception_handler)

        @app.post("/api/analyze")
        async def analyze(
            auth: AuthenticatedEnforced = Depends(require_authenticated),
            db: AsyncSession = Depends(get_write_db),
        ) -> dict[str, int]:
            updated = await record_usage(db, auth.user_id)
            return {"usageCount": updated.usage_count}

        async def override_db():
            yield db_session

        app.dependency_overrides[get_write_db] = override_db
        return TestClient(app)

    def test_fifth_action_rejected(self, metered_client: TestClient):
        headers = auth_header(make_signed_token())

        for expected in range(1, 5):
            response = metered_client.post("/api/analyze", headers=headers)
            assert response.status_code == 200
            assert response.json() == {"usageCount": expected}

        response = metered_client.post("/api/analyze", headers=headers)

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "QUOTA_EXCEEDED"
        assert error["details"]["usageCount"] == 4
        assert error["details"]["limit"] == 4
        assert error["details"]["planName"] == "Free"
