"""Create consumed_challenges table

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "consumed_challenges",
        sa.Column("seed_digest", sa.String(64), primary_key=True),
        sa.Column("consumed_at", sa.DateTime, nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=False),
    )
    op.create_index(
        "ix_consumed_challenges_expires_at", "consumed_challenges", ["expires_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_consumed_challenges_expires_at", table_name="consumed_challenges")
    op.drop_table("consumed_challenges")
