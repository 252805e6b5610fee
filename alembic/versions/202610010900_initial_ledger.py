"""initial ledger schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None

transaction_type = sa.Enum("income", "expense", name="transactiontype")
account_type = sa.Enum("current", "savings", name="accounttype")
recurring_interval = sa.Enum(
    "daily", "weekly", "monthly", "yearly", name="recurringinterval"
)


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.String(length=50), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("color", sa.String(length=7)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", account_type, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "is_default", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "balance", sa.Numeric(14, 2), nullable=False, server_default="0"
        ),
        sa.Column("archived_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_accounts_owner", "accounts", ["owner_id"])
    op.create_index(
        "uq_accounts_owner_default",
        "accounts",
        ["owner_id"],
        unique=True,
        sqlite_where=sa.text("is_default = 1"),
        postgresql_where=sa.text("is_default"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column(
            "category_id",
            sa.String(length=50),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("receipt_url", sa.String(length=500)),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("recurring_interval", recurring_interval),
        sa.Column("next_recurring_date", sa.Date()),
        sa.Column("last_processed_date", sa.Date()),
        sa.Column(
            "needs_review", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "origin_series_id", sa.String(length=36), sa.ForeignKey("transactions.id")
        ),
        sa.Column("occurrence_date", sa.Date()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "origin_series_id", "occurrence_date", name="uq_txn_series_occurrence"
        ),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "(is_recurring AND recurring_interval IS NOT NULL)"
            " OR (NOT is_recurring AND recurring_interval IS NULL)",
            name="ck_transactions_recurring_interval",
        ),
        sa.CheckConstraint(
            "next_recurring_date IS NULL OR is_recurring",
            name="ck_transactions_next_date_recurring",
        ),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index("ix_transactions_owner_date", "transactions", ["owner_id", "date"])
    op.create_index(
        "ix_transactions_due_series",
        "transactions",
        ["is_recurring", "next_recurring_date"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_budgets_amount_non_negative"),
        sa.UniqueConstraint("owner_id", "account_id", name="uq_budget_owner_scope"),
    )
    op.create_index(
        "uq_budgets_owner_wide",
        "budgets",
        ["owner_id"],
        unique=True,
        sqlite_where=sa.text("account_id IS NULL"),
        postgresql_where=sa.text("account_id IS NULL"),
    )


def downgrade():
    op.drop_index("uq_budgets_owner_wide", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_due_series", table_name="transactions")
    op.drop_index("ix_transactions_owner_date", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("uq_accounts_owner_default", table_name="accounts")
    op.drop_index("ix_accounts_owner", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("categories")
    bind = op.get_bind()
    recurring_interval.drop(bind, checkfirst=True)
    account_type.drop(bind, checkfirst=True)
    transaction_type.drop(bind, checkfirst=True)
