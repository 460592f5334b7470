"""add credit card invoices and user passwords

Revision ID: 202601120900
Revises: 202601050900
Create Date: 2026-01-12 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202601120900"
down_revision = "202601050900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("users") as batch_op:
        batch_op.add_column(sa.Column("password_hash", sa.String(length=255)))

    op.create_table(
        "credit_card_invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "credit_card_id",
            sa.Integer(),
            sa.ForeignKey("credit_cards.id"),
            nullable=False,
        ),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("pending", "partial", "paid", name="invoicestatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("total_cents >= 0", name="ck_invoice_total_positive"),
        sa.CheckConstraint("paid_cents >= 0", name="ck_invoice_paid_positive"),
        sa.UniqueConstraint(
            "user_id", "credit_card_id", "due_date", name="uq_invoice_card_due_date"
        ),
    )


def downgrade() -> None:
    op.drop_table("credit_card_invoices")
    with op.batch_alter_table("users") as batch_op:
        batch_op.drop_column("password_hash")
