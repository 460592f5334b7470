"""initial schema

Revision ID: 202601050900
Revises:
Create Date: 2026-01-05 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601050900"
down_revision = None
branch_labels = None
depends_on = None

PAYMENT_METHODS = ("cash", "debit", "credit", "instant_transfer", "bank_transfer")


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("first_name", sa.String(length=100)),
        sa.Column("last_name", sa.String(length=100)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("icon", sa.String(length=10), nullable=False),
        sa.Column("color", sa.String(length=7), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "subscription", name="categorytype"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id", "type", "name", name="uq_category_user_type_name"
        ),
    )

    op.create_table(
        "credit_cards",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("brand", sa.String(length=50), nullable=False),
        sa.Column("bank", sa.String(length=50), nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_used_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "color", sa.String(length=7), nullable=False, server_default="#3B82F6"
        ),
        sa.Column("closing_day", sa.Integer(), nullable=False),
        sa.Column("due_day", sa.Integer(), nullable=False),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("limit_cents >= 0", name="ck_credit_card_limit_positive"),
        sa.CheckConstraint(
            "current_used_cents >= 0", name="ck_credit_card_used_positive"
        ),
        sa.CheckConstraint("closing_day BETWEEN 1 AND 31", name="ck_credit_card_closing"),
        sa.CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_credit_card_due"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("service", sa.String(length=100)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("billing_day", sa.Integer(), nullable=False),
        sa.Column(
            "payment_method",
            sa.Enum(*PAYMENT_METHODS, name="paymentmethod"),
            nullable=False,
        ),
        sa.Column("credit_card_id", sa.Integer(), sa.ForeignKey("credit_cards.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_subscription_amount_positive"),
        sa.CheckConstraint("billing_day BETWEEN 1 AND 31", name="ck_subscription_billing"),
    )
    op.create_index(
        "ix_subscriptions_user_active", "subscriptions", ["user_id", "is_active"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "kind", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("payment_method", sa.Enum(*PAYMENT_METHODS, name="paymentmethod")),
        sa.Column("credit_card_id", sa.Integer(), sa.ForeignKey("credit_cards.id")),
        sa.Column("installments", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "installment_number", sa.Integer(), nullable=False, server_default="1"
        ),
        sa.Column(
            "parent_transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")
        ),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "installments BETWEEN 1 AND 24", name="ck_transactions_installments_range"
        ),
        sa.CheckConstraint(
            "installment_number BETWEEN 1 AND installments",
            name="ck_transactions_installment_number",
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "date"],
    )
    op.create_index(
        "ix_transactions_parent", "transactions", ["parent_transaction_id"]
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.UniqueConstraint(
            "user_id",
            "category_id",
            "year",
            "month",
            name="uq_budget_user_category_month",
        ),
    )
    op.create_index("ix_budget_user_month", "budgets", ["user_id", "year", "month"])


def downgrade():
    op.drop_index("ix_budget_user_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_parent", table_name="transactions")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_subscriptions_user_active", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("credit_cards")
    op.drop_table("categories")
    op.drop_table("users")
