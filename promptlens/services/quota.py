"""
Quota Ledger - Rolling 24-hour usage window per user.

NO DICTIONARIES - Decisions are returned as QuotaStatus.

The window is anchored at last_reset_at, not at calendar midnight. Reset
and increment are single conditional UPDATE ... RETURNING statements, so
concurrent requests never lose an increment or reset twice.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from promptlens.db.models import User
from promptlens.exceptions import QuotaExceededError, StorageUnavailableError, UserNotFoundError
from promptlens.models.api import Plan
from promptlens.models.domain import QuotaStatus
from promptlens.observability.metrics import metrics

logger = get_logger(__name__)

PLAN_LIMITS: dict[Plan, int | None] = {
    Plan.FREE: 4,
    Plan.PRO_MONTHLY: 50,
    Plan.PRO_YEARLY: None,  # unlimited
}

QUOTA_WINDOW = timedelta(hours=24)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def resolve_plan(plan: str | Plan | None) -> Plan:
    """Stored plan string to Plan; unknown values fall back to FREE."""
    if isinstance(plan, Plan):
        return plan
    return Plan.parse(plan) or Plan.FREE


def limit_for(plan: str | Plan | None) -> int | None:
    """Ceiling for a plan. None means unlimited; unknown plans get the free ceiling."""
    return PLAN_LIMITS[resolve_plan(plan)]


def is_window_stale(last_reset_at: datetime, now: datetime) -> bool:
    """True once a full window has elapsed since the last reset."""
    return now - _aware(last_reset_at) >= QUOTA_WINDOW


def next_reset_at(last_reset_at: datetime) -> datetime:
    return _aware(last_reset_at) + QUOTA_WINDOW


class QuotaLedger:
    """Reads and advances a user's position in the rolling window."""

    def __init__(self, session: AsyncSession, now: Callable[[], datetime] = _utc_now) -> None:
        self.session = session
        self._now = now

    def build_reset(self, user_id: UUID, now: datetime):
        """Conditional reset: only applies while the stored window is still stale."""
        return (
            update(User)
            .where(User.id == user_id, User.last_reset_at <= now - QUOTA_WINDOW)
            .values(usage_count=0, last_reset_at=now, updated_at=now)
            .returning(User)
        )

    def build_increment(self, user_id: UUID, now: datetime):
        return (
            update(User)
            .where(User.id == user_id)
            .values(usage_count=User.usage_count + 1, updated_at=now)
            .returning(User)
        )

    async def reset_if_stale(self, user: User) -> User:
        """
        Start a new window when the current one has elapsed.

        Returns the user unchanged (no write) when the window is fresh.
        When another request already reset the window, the fresh row is
        re-read instead of resetting again.
        """
        now = self._now()
        if not is_window_stale(user.last_reset_at, now):
            return user

        try:
            result = await self.session.execute(
                self.build_reset(user.id, now),
                execution_options={"populate_existing": True},
            )
            refreshed = result.scalar_one_or_none()
            if refreshed is None:
                reread = await self.session.execute(
                    select(User).where(User.id == user.id),
                    execution_options={"populate_existing": True},
                )
                refreshed = reread.scalar_one_or_none()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("quota_reset_failed", user_id=str(user.id), error=str(exc))
            raise StorageUnavailableError("reset_if_stale") from exc

        if refreshed is None:
            raise UserNotFoundError(str(user.id))

        if refreshed.last_reset_at == now:
            metrics.record_quota_reset()
            logger.info("quota_window_reset", user_id=str(user.id))
        return refreshed

    @staticmethod
    def snapshot(user: User) -> QuotaStatus:
        """Current position in the window. Never raises."""
        plan = resolve_plan(user.plan)
        return QuotaStatus(
            usage_count=user.usage_count,
            limit=PLAN_LIMITS[plan],
            plan=plan,
            reset_at=next_reset_at(user.last_reset_at),
        )

    def check(self, user: User) -> QuotaStatus:
        """
        Admit or reject one more action. Pure, no I/O.

        Raises:
            QuotaExceededError: If the user is at or above the plan ceiling
        """
        status = self.snapshot(user)
        if status.exhausted:
            metrics.record_quota_decision(status.plan.value, allowed=False)
            logger.warning(
                "quota_exceeded",
                user_id=str(user.id),
                usage_count=status.usage_count,
                limit=status.limit,
                plan=status.plan.value,
            )
            raise QuotaExceededError(
                usage_count=status.usage_count,
                limit=status.limit,  # type: ignore[arg-type]
                plan=status.plan.value,
                reset_at=status.reset_at,
            )

        metrics.record_quota_decision(status.plan.value, allowed=True)
        return status

    async def increment(self, user_id: UUID) -> User:
        """
        Count one completed action.

        Raises:
            UserNotFoundError: If the user row does not exist
            StorageUnavailableError: If the update cannot be executed
        """
        try:
            result = await self.session.execute(
                self.build_increment(user_id, self._now()),
                execution_options={"populate_existing": True},
            )
            user = result.scalar_one_or_none()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("quota_increment_failed", user_id=str(user_id), error=str(exc))
            raise StorageUnavailableError("increment") from exc

        if user is None:
            raise UserNotFoundError(str(user_id))

        logger.debug("usage_recorded", user_id=str(user_id), usage_count=user.usage_count)
        return user
