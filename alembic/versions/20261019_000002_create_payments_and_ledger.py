"""Create payments and payment_ledger tables

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19

Append-only payments against invoices and the hash-chained ledger that
records each one. transaction_reference is unique so a provider transaction
id can only be applied once; previous_hash is unique so the chain cannot fork.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_000002"
down_revision: Union[str, None] = "20261019_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("payment_number", sa.String(32), nullable=False),
        sa.Column("invoice_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column(
            "method",
            sa.Enum("cash", "mpesa", "card", "insurance", "bank_transfer", name="payment_method"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", "refunded", name="payment_status"),
            nullable=False,
            server_default="completed",
        ),
        sa.Column("transaction_reference", sa.String(64), nullable=False),
        sa.Column("payer_phone", sa.String(20), nullable=True),
        sa.Column("received_by", sa.String(64), nullable=False),
        sa.Column("received_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["invoice_id"],
            ["invoices.id"],
            name="fk_payments_invoice_id",
            ondelete="RESTRICT",
        ),
        sa.UniqueConstraint("payment_number", name="uq_payments_payment_number"),
        sa.UniqueConstraint("transaction_reference", name="uq_payments_transaction_reference"),
    )
    op.create_index("ix_payments_payment_number", "payments", ["payment_number"])
    op.create_index("ix_payments_invoice_id", "payments", ["invoice_id"])
    op.create_index("ix_payments_transaction_reference", "payments", ["transaction_reference"])

    op.create_table(
        "payment_ledger",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=False),
        sa.Column("transaction_hash", sa.String(64), nullable=False),
        sa.Column("previous_hash", sa.String(64), nullable=False),
        sa.Column("timestamp", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["payment_id"],
            ["payments.id"],
            name="fk_payment_ledger_payment_id",
            ondelete="RESTRICT",
        ),
        sa.UniqueConstraint("payment_id", name="uq_payment_ledger_payment_id"),
        sa.UniqueConstraint("transaction_hash", name="uq_payment_ledger_transaction_hash"),
        sa.UniqueConstraint("previous_hash", name="uq_payment_ledger_previous_hash"),
    )
    op.create_index("ix_payment_ledger_payment_id", "payment_ledger", ["payment_id"])
    op.create_index("ix_payment_ledger_transaction_hash", "payment_ledger", ["transaction_hash"])
    op.create_index("ix_payment_ledger_previous_hash", "payment_ledger", ["previous_hash"])


def downgrade() -> None:
    op.drop_index("ix_payment_ledger_previous_hash", table_name="payment_ledger")
    op.drop_index("ix_payment_ledger_transaction_hash", table_name="payment_ledger")
    op.drop_index("ix_payment_ledger_payment_id", table_name="payment_ledger")
    op.drop_table("payment_ledger")
    op.drop_index("ix_payments_transaction_reference", table_name="payments")
    op.drop_index("ix_payments_invoice_id", table_name="payments")
    op.drop_index("ix_payments_payment_number", table_name="payments")
    op.drop_table("payments")
