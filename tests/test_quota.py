"""
Tests for the rolling quota window.

The window is anchored at last_reset_at; the ceiling depends on the plan.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from conftest import create_mock_user, make_result
from hypothesis import given
from hypothesis import strategies as st
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from promptlens.exceptions import QuotaExceededError, StorageUnavailableError, UserNotFoundError
from promptlens.models.api import Plan
from promptlens.services.quota import (
    PLAN_LIMITS,
    QUOTA_WINDOW,
    QuotaLedger,
    is_window_stale,
    limit_for,
    next_reset_at,
    resolve_plan,
)

NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=UTC)


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


class TestPlanLimits:
    def test_free_limit(self):
        assert limit_for("free") == 4

    def test_pro_monthly_limit(self):
        assert limit_for(Plan.PRO_MONTHLY) == 50

    def test_pro_yearly_unlimited(self):
        assert limit_for("pro_yearly") is None

    @pytest.mark.parametrize("plan", ["enterprise", "", None, "FREE"])
    def test_unknown_plan_gets_free_ceiling(self, plan):
        assert resolve_plan(plan) == Plan.FREE
        assert limit_for(plan) == PLAN_LIMITS[Plan.FREE]


class TestWindow:
    def test_not_stale_just_before_24h(self):
        assert is_window_stale(NOW - timedelta(hours=23, minutes=59), NOW) is False

    def test_stale_at_exactly_24h(self):
        assert is_window_stale(NOW - timedelta(hours=24), NOW) is True

    def test_naive_timestamp_treated_as_utc(self):
        naive = (NOW - timedelta(hours=25)).replace(tzinfo=None)
        assert is_window_stale(naive, NOW) is True

    def test_next_reset_at(self):
        assert next_reset_at(NOW) == NOW + QUOTA_WINDOW

    @given(st.integers(min_value=0, max_value=10 * 24 * 3600))
    def test_staleness_matches_elapsed(self, elapsed_seconds: int):
        last_reset = NOW - timedelta(seconds=elapsed_seconds)
        assert is_window_stale(last_reset, NOW) == (elapsed_seconds >= 24 * 3600)


class TestCheck:
    """check() is pure: no I/O, admit or raise."""

    def test_snapshot_needs_no_session(self):
        user = create_mock_user(plan="pro_monthly", usage_count=50, last_reset_at=NOW)

        status = QuotaLedger.snapshot(user)

        assert status.plan == Plan.PRO_MONTHLY
        assert status.remaining == 0
        assert status.reset_at == NOW + QUOTA_WINDOW

    def test_free_user_under_limit_admitted(self, db_session: AsyncMock):
        user = create_mock_user(usage_count=3, last_reset_at=NOW)

        status = QuotaLedger(db_session, now=lambda: NOW).check(user)

        assert status.usage_count == 3
        assert status.limit == 4
        assert status.remaining == 1
        assert status.reset_at == NOW + timedelta(hours=24)
        db_session.execute.assert_not_called()

    def test_free_user_at_limit_rejected(self, db_session: AsyncMock):
        user = create_mock_user(usage_count=4, last_reset_at=NOW)

        with pytest.raises(QuotaExceededError) as exc_info:
            QuotaLedger(db_session, now=lambda: NOW).check(user)

        error = exc_info.value
        assert error.status_code == 429
        assert error.code == "QUOTA_EXCEEDED"
        assert error.message.startswith("Daily limit reached. You have used 4/4 requests.")
        assert error.details == {
            "usageCount": 4,
            "limit": 4,
            "plan": "free",
            "planName": "Free",
            "resetAt": (NOW + timedelta(hours=24)).isoformat(),
        }

    def test_pro_monthly_at_limit_rejected(self, db_session: AsyncMock):
        user = create_mock_user(plan="pro_monthly", usage_count=50, last_reset_at=NOW)

        with pytest.raises(QuotaExceededError) as exc_info:
            QuotaLedger(db_session).check(user)

        assert exc_info.value.details["planName"] == "Pro Monthly"

    def test_pro_yearly_never_rejected(self, db_session: AsyncMock):
        user = create_mock_user(plan="pro_yearly", usage_count=10_000, last_reset_at=NOW)

        status = QuotaLedger(db_session).check(user)

        assert status.limit is None
        assert status.remaining is None

    def test_unknown_plan_uses_free_ceiling(self, db_session: AsyncMock):
        user = create_mock_user(plan="legacy", usage_count=4, last_reset_at=NOW)

        with pytest.raises(QuotaExceededError) as exc_info:
            QuotaLedger(db_session).check(user)

        assert exc_info.value.limit == 4

    @given(
        st.sampled_from(["free", "pro_monthly", "pro_yearly"]),
        st.integers(min_value=0, max_value=200),
    )
    def test_admission_matches_ceiling(self, plan: str, usage: int):
        ledger = QuotaLedger(AsyncMock(), now=lambda: NOW)
        user = create_mock_user(plan=plan, usage_count=usage, last_reset_at=NOW)
        limit = limit_for(plan)

        if limit is not None and usage >= limit:
            with pytest.raises(QuotaExceededError):
                ledger.check(user)
        else:
            assert ledger.check(user).usage_count == usage


class TestResetIfStale:
    async def test_fresh_window_untouched(self, db_session: AsyncMock):
        user = create_mock_user(usage_count=3, last_reset_at=NOW - timedelta(hours=23, minutes=59))

        result = await QuotaLedger(db_session, now=lambda: NOW).reset_if_stale(user)

        assert result is user
        db_session.execute.assert_not_called()
        db_session.commit.assert_not_called()

    async def test_stale_window_reset(self, db_session: AsyncMock):
        user = create_mock_user(usage_count=4, last_reset_at=NOW - timedelta(hours=24))
        refreshed = create_mock_user(user_id=user.id, usage_count=0, last_reset_at=NOW)
        db_session.execute = AsyncMock(return_value=make_result(scalar=refreshed))

        result = await QuotaLedger(db_session, now=lambda: NOW).reset_if_stale(user)

        assert result.usage_count == 0
        assert result.last_reset_at == NOW
        db_session.commit.assert_awaited_once()

    async def test_concurrent_reset_rereads_row(self, db_session: AsyncMock):
        """Another request already reset the window; the guarded update matches nothing."""
        user = create_mock_user(usage_count=4, last_reset_at=NOW - timedelta(hours=30))
        current = create_mock_user(
            user_id=user.id, usage_count=1, last_reset_at=NOW - timedelta(seconds=1)
        )
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=None), make_result(scalar=current)]
        )

        result = await QuotaLedger(db_session, now=lambda: NOW).reset_if_stale(user)

        assert result is current
        assert result.usage_count == 1
        assert db_session.execute.await_count == 2

    async def test_deleted_user(self, db_session: AsyncMock):
        user = create_mock_user(last_reset_at=NOW - timedelta(days=2))
        db_session.execute = AsyncMock(return_value=make_result(scalar=None))

        with pytest.raises(UserNotFoundError):
            await QuotaLedger(db_session, now=lambda: NOW).reset_if_stale(user)

    async def test_storage_failure(self, db_session: AsyncMock):
        user = create_mock_user(last_reset_at=NOW - timedelta(days=2))
        db_session.execute = AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("down")))

        with pytest.raises(StorageUnavailableError):
            await QuotaLedger(db_session, now=lambda: NOW).reset_if_stale(user)

        db_session.rollback.assert_awaited_once()

    def test_reset_statement_is_conditional(self, db_session: AsyncMock):
        sql = _sql(QuotaLedger(db_session).build_reset(uuid4(), NOW))

        assert sql.startswith("UPDATE users SET usage_count=")
        assert "WHERE users.id = " in sql
        assert "users.last_reset_at <= " in sql
        assert "RETURNING" in sql


class TestIncrement:
    async def test_increment_returns_updated_row(self, db_session: AsyncMock):
        user = create_mock_user(usage_count=2)
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))

        result = await QuotaLedger(db_session).increment(user.id)

        assert result is user
        db_session.commit.assert_awaited_once()

    async def test_increment_unknown_user(self, db_session: AsyncMock):
        with pytest.raises(UserNotFoundError):
            await QuotaLedger(db_session).increment(uuid4())

    async def test_increment_storage_failure(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("down")))

        with pytest.raises(StorageUnavailableError):
            await QuotaLedger(db_session).increment(uuid4())

    def test_increment_is_relative(self, db_session: AsyncMock):
        sql = _sql(QuotaLedger(db_session).build_increment(uuid4(), NOW))

        assert "usage_count=(users.usage_count + " in sql
        assert "RETURNING" in sql


class TestRollingWindowScenario:
    """Four actions, a rejection, then a fresh window a day later."""

    async def test_free_user_over_a_day(self):
        clock = {"now": NOW}
        user = create_mock_user(usage_count=0, last_reset_at=NOW)

        async def execute(stmt, *args, **kwargs):
            params = stmt.compile(dialect=postgresql.dialect()).params
            if "last_reset_at" in params:
                user.usage_count = 0
                user.last_reset_at = clock["now"]
            else:
                user.usage_count += 1
            return make_result(scalar=user)

        session = MagicMock()
        session.execute = AsyncMock(side_effect=execute)
        session.commit = AsyncMock()
        session.rollback = AsyncMock()
        ledger = QuotaLedger(session, now=lambda: clock["now"])

        async def attempt():
            current = await ledger.reset_if_stale(user)
            ledger.check(current)
            return await ledger.increment(current.id)

        for expected in range(1, 5):
            assert (await attempt()).usage_count == expected

        with pytest.raises(QuotaExceededError):
            await attempt()
        assert user.usage_count == 4

        clock["now"] = NOW + timedelta(hours=25)
        assert (await attempt()).usage_count == 1
        assert user.last_reset_at == NOW + timedelta(hours=25)
