"""initial ledger schema

Revision ID: 202610011200
Revises:
Create Date: 2026-10-01 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610011200"
down_revision = None
branch_labels = None
depends_on = None

# Money columns hold 1e-8 units and rate columns 1e-10 units as integers.
MONEY = sa.BigInteger()
RATE = sa.BigInteger()


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "currencies",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=10), nullable=False, unique=True),
        sa.Column("symbol", sa.String(length=10), nullable=False, server_default=""),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("is_base", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        "exchange_rates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "from_currency_id",
            sa.Integer(),
            sa.ForeignKey("currencies.id"),
            nullable=False,
        ),
        sa.Column(
            "to_currency_id", sa.Integer(), sa.ForeignKey("currencies.id"), nullable=False
        ),
        sa.Column("rate", RATE, nullable=False),
        sa.Column(
            "source",
            sa.Enum("official", "binance", "manual", name="ratesource"),
            nullable=False,
            server_default="manual",
        ),
        sa.Column("fetched_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("rate > 0", name="ck_exchange_rate_positive"),
        sa.CheckConstraint(
            "from_currency_id <> to_currency_id", name="ck_exchange_rate_distinct"
        ),
    )
    op.create_index(
        "ix_exchange_rates_pair_fetched",
        "exchange_rates",
        ["from_currency_id", "to_currency_id", "fetched_at"],
    )

    op.create_table(
        "account_types",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        *_timestamps(),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("balance", MONEY, nullable=False, server_default="0"),
        sa.Column(
            "currency_id", sa.Integer(), sa.ForeignKey("currencies.id"), nullable=False
        ),
        sa.Column("account_type_id", sa.Integer(), sa.ForeignKey("account_types.id")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("color", sa.String(length=7)),
        *_timestamps(),
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("salary", MONEY),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("currency_id", sa.Integer(), sa.ForeignKey("currencies.id")),
        sa.Column(
            "status",
            sa.Enum("active", "inactive", name="jobstatus"),
            nullable=False,
            server_default="active",
        ),
        *_timestamps(),
    )

    op.create_table(
        "incomes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_id", sa.Integer(), sa.ForeignKey("jobs.id")),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column(
            "currency_id", sa.Integer(), sa.ForeignKey("currencies.id"), nullable=False
        ),
        sa.Column("official_rate", RATE),
        sa.Column("custom_rate", RATE),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("description", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_income_amount_positive"),
    )
    op.create_index("ix_incomes_account_date", "incomes", ["account_id", "date"])

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column(
            "currency_id", sa.Integer(), sa.ForeignKey("currencies.id"), nullable=False
        ),
        sa.Column("official_rate", RATE),
        sa.Column("custom_rate", RATE),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "periodicity", sa.Enum("weekly", "monthly", "yearly", name="periodicity")
        ),
        sa.Column("next_due_date", sa.Date()),
        sa.Column("origin_expense_id", sa.Integer(), sa.ForeignKey("expenses.id")),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("description", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_expense_amount_positive"),
    )
    op.create_index("ix_expenses_account_date", "expenses", ["account_id", "date"])
    op.create_index(
        "ix_expenses_recurring_due", "expenses", ["is_recurring", "next_due_date"]
    )

    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "from_account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "to_account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column(
            "currency_id", sa.Integer(), sa.ForeignKey("currencies.id"), nullable=False
        ),
        sa.Column("exchange_rate", RATE),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("description", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_transfer_amount_positive"),
        sa.CheckConstraint(
            "from_account_id <> to_account_id", name="ck_transfer_distinct_accounts"
        ),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("type", sa.Enum("goal", "envelope", name="budgettype"), nullable=False),
        sa.Column("target_amount", MONEY),
        sa.Column("current_amount", MONEY, nullable=False, server_default="0"),
        sa.Column(
            "currency_id", sa.Integer(), sa.ForeignKey("currencies.id"), nullable=False
        ),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("deadline", sa.Date()),
        sa.Column(
            "status",
            sa.Enum("active", "completed", "cancelled", name="budgetstatus"),
            nullable=False,
            server_default="active",
        ),
        *_timestamps(),
        sa.CheckConstraint("current_amount >= 0", name="ck_budget_current_non_negative"),
    )

    op.create_table(
        "budget_contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("from_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("description", sa.Text()),
        sa.Column("date", sa.DateTime(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount <> 0", name="ck_contribution_amount_nonzero"),
    )
    op.create_index(
        "ix_budget_contributions_budget_date",
        "budget_contributions",
        ["budget_id", "date"],
    )


def downgrade():
    op.drop_index(
        "ix_budget_contributions_budget_date", table_name="budget_contributions"
    )
    op.drop_table("budget_contributions")
    op.drop_table("budgets")
    op.drop_table("transfers")
    op.drop_index("ix_expenses_recurring_due", table_name="expenses")
    op.drop_index("ix_expenses_account_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_incomes_account_date", table_name="incomes")
    op.drop_table("incomes")
    op.drop_table("jobs")
    op.drop_table("categories")
    op.drop_table("accounts")
    op.drop_table("account_types")
    op.drop_index("ix_exchange_rates_pair_fetched", table_name="exchange_rates")
    op.drop_table("exchange_rates")
    op.drop_table("currencies")
