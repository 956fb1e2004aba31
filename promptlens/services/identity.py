"""
Identity Provisioner - Maps a verified email to exactly one user row.

Creation is a single INSERT ... ON CONFLICT (email) DO UPDATE ... RETURNING,
so concurrent first requests for the same email converge on one row
without a read-then-write window.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import literal_column, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from promptlens.db.models import User
from promptlens.exceptions import StorageUnavailableError
from promptlens.models.api import Plan
from promptlens.observability.metrics import metrics

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def normalize_email(email: str) -> str:
    """Natural key form of an email: trimmed and lower-cased."""
    return email.strip().lower()


def default_display_name(email: str) -> str:
    """Local part of the email, used when the token carries no name."""
    return email.split("@", 1)[0]


class IdentityProvisioner:
    """Find-or-create and lookups for users."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def build_upsert(self, email: str, display_name: str | None, now: datetime):
        """
        Build the find-or-create statement.

        Defaults live only in VALUES; on conflict the row is "updated" to
        its own email so RETURNING yields the existing row untouched.
        """
        stmt = insert(User).values(
            email=email,
            display_name=display_name or default_display_name(email),
            plan=Plan.FREE.value,
            usage_count=0,
            last_reset_at=now,
            created_at=now,
            updated_at=now,
        )
        return stmt.on_conflict_do_update(
            index_elements=[User.email],
            set_={"email": stmt.excluded.email},
        ).returning(User, literal_column("(xmax = 0)").label("inserted"))

    async def find_or_create(self, email: str, display_name: str | None = None) -> User:
        """
        Return the user for this email, creating it on first sight.

        Raises:
            ValueError: If the email is empty
            StorageUnavailableError: If the database cannot complete the upsert
        """
        normalized = normalize_email(email or "")
        if not normalized:
            raise ValueError("email cannot be empty")

        stmt = self.build_upsert(normalized, display_name, _utc_now())
        try:
            result = await self.session.execute(
                stmt, execution_options={"populate_existing": True}
            )
            user, inserted = result.one()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("user_upsert_failed", email=normalized, error=str(exc))
            raise StorageUnavailableError("find_or_create") from exc

        if inserted:
            metrics.record_user_created()
            logger.info("user_created", user_id=str(user.id), email=normalized)

        return user

    async def get_by_id(self, user_id: UUID) -> User | None:
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> User | None:
        result = await self.session.execute(
            select(User).where(User.email == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def get_by_subscription_id(self, subscription_id: str) -> User | None:
        result = await self.session.execute(
            select(User).where(User.subscription_id == subscription_id)
        )
        return result.scalars().first()
