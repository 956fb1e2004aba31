"""Add processed_events table for webhook idempotency.

Revision ID: 2026_03_09_0001
Revises: 2026_03_02_0000
Create Date: 2026-03-09

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_03_09_0001"
down_revision: str | None = "2026_03_02_0000"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create processed_events table."""
    op.create_table(
        "processed_events",
        sa.Column("event_key", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column(
            "processed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_processed_events_expires_at", "processed_events", ["expires_at"])


def downgrade() -> None:
    """Drop processed_events table."""
    op.drop_index("idx_processed_events_expires_at", table_name="processed_events")
    op.drop_table("processed_events")
