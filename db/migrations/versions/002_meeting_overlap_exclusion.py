"""Forbid overlapping scheduled meetings per activator at the storage level.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""
from alembic import op

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # btree_gist provides the gist opclass for the uuid equality part
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
    op.execute(
        """
        ALTER TABLE crm.activation_meetings
        ADD CONSTRAINT ex_activation_meetings_no_overlap
        EXCLUDE USING gist (
            activator_user_id WITH =,
            tstzrange(scheduled_start_at, scheduled_end_at, '[)') WITH &&
        )
        WHERE (status = 'scheduled')
        """
    )


def downgrade() -> None:
    op.execute(
        "ALTER TABLE crm.activation_meetings DROP CONSTRAINT IF EXISTS ex_activation_meetings_no_overlap"
    )
