"""initial ledger schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


ENTRY_TYPE = sa.Enum("income", "expense", name="entrytype")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=120)),
        sa.Column("avatar_url", sa.Text()),
        *_timestamps(),
    )

    op.create_table(
        "entry_categories",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("icon_key", sa.String(length=60)),
        sa.Column("color", sa.String(length=9)),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("merged_to_id", sa.String(length=64)),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index(
        "ix_entry_categories_family_sort",
        "entry_categories",
        ["family_id", "sort_order", "name"],
    )

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("cash", "bank", "emoney", "card", name="paymentmethodtype"),
            nullable=False,
        ),
        sa.Column("icon_key", sa.String(length=60)),
        sa.Column("color", sa.String(length=9)),
        sa.Column("card_closing_day", sa.Integer()),
        sa.Column("card_payment_day", sa.Integer()),
        sa.Column("linked_bank_payment_method_id", sa.String(length=64)),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint(
            "card_closing_day IS NULL OR card_closing_day BETWEEN 1 AND 31",
            name="ck_payment_methods_closing_day",
        ),
        sa.CheckConstraint(
            "card_payment_day IS NULL OR card_payment_day BETWEEN 1 AND 31",
            name="ck_payment_methods_payment_day",
        ),
    )
    op.create_index(
        "ix_payment_methods_family_sort",
        "payment_methods",
        ["family_id", "sort_order", "name"],
    )

    op.create_table(
        "recurring_rules",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column("entry_type", ENTRY_TYPE, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("entry_category_id", sa.String(length=64)),
        sa.Column("payment_method_id", sa.String(length=64)),
        sa.Column("memo", sa.Text()),
        sa.Column(
            "frequency",
            sa.Enum("weekly", "monthly", "bimonthly", "yearly", name="frequency"),
            nullable=False,
        ),
        sa.Column("day_of_month", sa.Integer()),
        sa.Column(
            "holiday_adjustment",
            sa.Enum("none", "previous", "next", name="holidayadjustment"),
            nullable=False,
        ),
        sa.Column("start_at", sa.DateTime(), nullable=False),
        sa.Column("end_at", sa.DateTime()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_recurring_rules_amount_positive"),
    )
    op.create_index("ix_recurring_rules_active", "recurring_rules", ["is_active"])

    op.create_table(
        "entries",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column("entry_type", ENTRY_TYPE, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("entry_category_id", sa.String(length=64)),
        sa.Column("payment_method_id", sa.String(length=64)),
        sa.Column("memo", sa.Text()),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("occurred_on", sa.Date(), nullable=False),
        sa.Column("recurring_rule_id", sa.String(length=64)),
        sa.Column("created_by_user_id", sa.String(length=64)),
        sa.Column("created_by_user_name", sa.String(length=120)),
        sa.Column("created_by_avatar_url", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_entries_amount_positive"),
    )
    op.create_index("ix_entries_family_updated", "entries", ["family_id", "updated_at"])
    op.create_index(
        "ix_entries_family_occurred_on", "entries", ["family_id", "occurred_on"]
    )
    op.create_index(
        "ix_entries_rule_occurred_on", "entries", ["recurring_rule_id", "occurred_on"]
    )

    op.create_table(
        "monthly_balances",
        sa.Column("family_id", sa.String(length=64), primary_key=True),
        sa.Column("ym", sa.String(length=7), primary_key=True),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_closed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "change_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=40), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column(
            "action", sa.Enum("upsert", "delete", name="changeaction"), nullable=False
        ),
        sa.Column("payload", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_change_logs_family_id", "change_logs", ["family_id", "id"])

    op.create_table(
        "mutation_receipts",
        sa.Column("request_id", sa.String(length=128), primary_key=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column("endpoint", sa.String(length=255), nullable=False),
        sa.Column("method", sa.String(length=10), nullable=False),
        sa.Column("status", sa.Integer(), nullable=False),
        sa.Column("response_body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_mutation_receipts_family_created",
        "mutation_receipts",
        ["family_id", "created_at"],
    )
    op.create_index("ix_mutation_receipts_expires", "mutation_receipts", ["expires_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column("actor_user_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("target_type", sa.String(length=40), nullable=False),
        sa.Column("target_id", sa.String(length=64), nullable=False),
        sa.Column("summary", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_audit_logs_family_created", "audit_logs", ["family_id", "created_at"]
    )

    op.create_table(
        "entry_amount_changes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column("entry_id", sa.String(length=64), nullable=False),
        sa.Column("previous_amount", sa.Integer(), nullable=False),
        sa.Column("next_amount", sa.Integer(), nullable=False),
        sa.Column("changed_by_user_id", sa.String(length=64), nullable=False),
        sa.Column("changed_by_user_name", sa.String(length=120)),
        sa.Column("changed_by_avatar_url", sa.Text()),
        sa.Column("changed_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_entry_amount_changes_family_entry",
        "entry_amount_changes",
        ["family_id", "entry_id", "changed_at"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_entry_amount_changes_family_entry", table_name="entry_amount_changes"
    )
    op.drop_table("entry_amount_changes")
    op.drop_index("ix_audit_logs_family_created", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_mutation_receipts_expires", table_name="mutation_receipts")
    op.drop_index("ix_mutation_receipts_family_created", table_name="mutation_receipts")
    op.drop_table("mutation_receipts")
    op.drop_index("ix_change_logs_family_id", table_name="change_logs")
    op.drop_table("change_logs")
    op.drop_table("monthly_balances")
    op.drop_index("ix_entries_rule_occurred_on", table_name="entries")
    op.drop_index("ix_entries_family_occurred_on", table_name="entries")
    op.drop_index("ix_entries_family_updated", table_name="entries")
    op.drop_table("entries")
    op.drop_index("ix_recurring_rules_active", table_name="recurring_rules")
    op.drop_table("recurring_rules")
    op.drop_index("ix_payment_methods_family_sort", table_name="payment_methods")
    op.drop_table("payment_methods")
    op.drop_index("ix_entry_categories_family_sort", table_name="entry_categories")
    op.drop_table("entry_categories")
    op.drop_table("users")
