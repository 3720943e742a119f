"""recurring occurrence markers

Revision ID: 202610190900
Revises: 202610180900
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610190900"
down_revision = "202610180900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "recurring_occurrences",
        sa.Column("rule_id", sa.String(length=64), primary_key=True),
        sa.Column("occurred_on", sa.Date(), primary_key=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column("entry_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    # Entries generated before this table existed count as already made.
    op.execute(
        "INSERT INTO recurring_occurrences "
        "(rule_id, occurred_on, family_id, entry_id, created_at) "
        "SELECT recurring_rule_id, occurred_on, family_id, id, created_at "
        "FROM entries WHERE recurring_rule_id IS NOT NULL "
        "AND created_by_user_id = 'system'"
    )


def downgrade() -> None:
    op.drop_table("recurring_occurrences")
