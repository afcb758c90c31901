"""Create mpesa_transactions and mpesa_stk_requests tables

Revision ID: 20261019_000003
Revises: 20261019_000002
Create Date: 2026-10-19

Provider transactions reported by Safaricom (C2B confirmations and STK
callbacks) and the outbound STK push requests that map callbacks back to
their invoice.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_000003"
down_revision: Union[str, None] = "20261019_000002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "mpesa_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("trans_id", sa.String(64), nullable=False),
        sa.Column("transaction_type", sa.String(64), nullable=True),
        sa.Column("trans_time", sa.String(32), nullable=True),
        sa.Column("amount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("business_short_code", sa.String(16), nullable=True),
        sa.Column("bill_ref_number", sa.String(64), nullable=True),
        sa.Column("org_account_balance", sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column("third_party_trans_id", sa.String(64), nullable=True),
        sa.Column("msisdn", sa.String(20), nullable=True),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("middle_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("raw_payload", sa.JSON(), nullable=False),
        sa.Column(
            "source",
            sa.Enum("c2b", "stk", name="mpesa_transaction_source"),
            nullable=False,
            server_default="c2b",
        ),
        sa.Column("is_allocated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("allocated_to_invoice_id", sa.Integer(), nullable=True),
        sa.Column("allocated_at", sa.DateTime(), nullable=True),
        sa.Column("allocated_by", sa.String(64), nullable=True),
        sa.Column(
            "review_reason",
            sa.Enum(
                "unmatched", "already_settled", "overpayment", "invoice_closed", "invalid_amount",
                name="mpesa_review_reason",
            ),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["allocated_to_invoice_id"],
            ["invoices.id"],
            name="fk_mpesa_transactions_invoice_id",
            ondelete="RESTRICT",
        ),
        sa.UniqueConstraint("trans_id", name="uq_mpesa_transactions_trans_id"),
    )
    op.create_index("ix_mpesa_transactions_trans_id", "mpesa_transactions", ["trans_id"])
    op.create_index("ix_mpesa_transactions_bill_ref_number", "mpesa_transactions", ["bill_ref_number"])
    op.create_index("ix_mpesa_transactions_is_allocated", "mpesa_transactions", ["is_allocated"])
    op.create_index(
        "ix_mpesa_transactions_allocated_to_invoice_id",
        "mpesa_transactions",
        ["allocated_to_invoice_id"],
    )

    op.create_table(
        "mpesa_stk_requests",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("checkout_request_id", sa.String(64), nullable=False),
        sa.Column("merchant_request_id", sa.String(64), nullable=True),
        sa.Column("phone_number", sa.String(20), nullable=False),
        sa.Column("amount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("account_reference", sa.String(64), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", name="mpesa_stk_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("result_code", sa.Integer(), nullable=True),
        sa.Column("result_desc", sa.String(255), nullable=True),
        sa.Column("mpesa_receipt_number", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("checkout_request_id", name="uq_mpesa_stk_requests_checkout_request_id"),
    )
    op.create_index(
        "ix_mpesa_stk_requests_checkout_request_id",
        "mpesa_stk_requests",
        ["checkout_request_id"],
    )
    op.create_index("ix_mpesa_stk_requests_account_reference", "mpesa_stk_requests", ["account_reference"])


def downgrade() -> None:
    op.drop_index("ix_mpesa_stk_requests_account_reference", table_name="mpesa_stk_requests")
    op.drop_index("ix_mpesa_stk_requests_checkout_request_id", table_name="mpesa_stk_requests")
    op.drop_table("mpesa_stk_requests")
    op.drop_index("ix_mpesa_transactions_allocated_to_invoice_id", table_name="mpesa_transactions")
    op.drop_index("ix_mpesa_transactions_is_allocated", table_name="mpesa_transactions")
    op.drop_index("ix_mpesa_transactions_bill_ref_number", table_name="mpesa_transactions")
    op.drop_index("ix_mpesa_transactions_trans_id", table_name="mpesa_transactions")
    op.drop_table("mpesa_transactions")
