"""households, categories, transactions, budgets and spending aggregate

Revision ID: 202601150900
Revises:
Create Date: 2026-01-15 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202601150900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    transaction_type = sa.Enum("income", "expense", "transfer", name="transactiontype")
    member_status = sa.Enum("active", "invited", "removed", name="memberstatus")

    op.create_table(
        "households",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("created_by", sa.String(length=36), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "household_members",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "household_id",
            sa.String(length=36),
            sa.ForeignKey("households.id"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("status", member_status, nullable=False, server_default="active"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("household_id", "user_id", name="uq_household_member"),
    )
    op.create_index(
        "ix_household_member_user_status",
        "household_members",
        ["user_id", "status"],
    )

    op.create_table(
        "user_active_households",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False, unique=True),
        sa.Column(
            "household_id",
            sa.String(length=36),
            sa.ForeignKey("households.id"),
            nullable=False,
        ),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36)),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("archived_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "type", "name", name="uq_category_user_type_name"
        ),
    )

    op.create_table(
        "subcategories",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "category_id",
            sa.String(length=36),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(length=36)),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "category_id", "name", name="uq_subcategory_category_name"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column(
            "household_id", sa.String(length=36), sa.ForeignKey("households.id")
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.String(length=36), sa.ForeignKey("categories.id")
        ),
        sa.Column(
            "subcategory_id", sa.String(length=36), sa.ForeignKey("subcategories.id")
        ),
        sa.Column("note", sa.Text()),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index(
        "ix_transactions_user_type_date", "transactions", ["user_id", "type", "date"]
    )
    op.create_index(
        "ix_transactions_household_type_date",
        "transactions",
        ["household_id", "type", "date"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("period", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category_id",
            sa.String(length=36),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column(
            "subcategory_id", sa.String(length=36), sa.ForeignKey("subcategories.id")
        ),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column(
            "household_id", sa.String(length=36), sa.ForeignKey("households.id")
        ),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("note", sa.Text()),
        sa.Column("scope_key", sa.String(length=48), nullable=False),
        sa.Column("owner_key", sa.String(length=36), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
    )
    op.create_index("ix_budget_period", "budgets", ["period"])
    # Live rows only: a soft-deleted budget must not block its slot.
    op.create_index(
        "uq_budget_period_scope_owner",
        "budgets",
        ["period", "scope_key", "owner_key"],
        unique=True,
        sqlite_where=sa.text("deleted_at IS NULL"),
        postgresql_where=sa.text("deleted_at IS NULL"),
    )

    op.create_table(
        "budget_spending",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("period", sa.Date(), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("scope_key", sa.String(length=48), nullable=False),
        sa.Column("category_id", sa.String(length=36)),
        sa.Column("subcategory_id", sa.String(length=36)),
        sa.Column(
            "actual_spend_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "transaction_count", sa.Integer(), nullable=False, server_default="0"
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "period",
            "user_id",
            "scope_key",
            name="uq_budget_spending_period_user_scope",
        ),
    )
    op.create_index(
        "ix_budget_spending_user_period", "budget_spending", ["user_id", "period"]
    )


def downgrade() -> None:
    op.drop_index("ix_budget_spending_user_period", table_name="budget_spending")
    op.drop_table("budget_spending")

    op.drop_index("uq_budget_period_scope_owner", table_name="budgets")
    op.drop_index("ix_budget_period", table_name="budgets")
    op.drop_table("budgets")

    op.drop_index("ix_transactions_household_type_date", table_name="transactions")
    op.drop_index("ix_transactions_user_type_date", table_name="transactions")
    op.drop_table("transactions")

    op.drop_table("subcategories")
    op.drop_table("categories")
    op.drop_table("user_active_households")

    op.drop_index("ix_household_member_user_status", table_name="household_members")
    op.drop_table("household_members")
    op.drop_table("households")

    sa.Enum(name="memberstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="transactiontype").drop(op.get_bind(), checkfirst=True)
