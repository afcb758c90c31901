# models/mpesa.py
"""
M-PESA records received from / sent to Safaricom.

ProviderTransaction rows are written once when the provider reports a payment
(C2B confirmation or successful STK callback). Only the allocation columns
change afterwards, and only once.
"""
import enum

from sqlalchemy import (
     JSON,
     Boolean,
     Column,
     DateTime,
     Enum,
     ForeignKey,
     Integer,
     Numeric,
     String,
     func,
)
from sqlalchemy.orm import relationship

from .base import Base, TimestampMixin
from .invoice import _enum_values


class TransactionSource(str, enum.Enum):
     C2B = "c2b"
     STK = "stk"


class ReviewReason(str, enum.Enum):
     """Why an unallocated transaction is waiting for staff."""
     UNMATCHED = "unmatched"
     ALREADY_SETTLED = "already_settled"
     OVERPAYMENT = "overpayment"
     INVOICE_CLOSED = "invoice_closed"
     INVALID_AMOUNT = "invalid_amount"


class StkRequestStatus(str, enum.Enum):
     PENDING = "pending"
     COMPLETED = "completed"
     FAILED = "failed"


class ProviderTransaction(Base):
     __tablename__ = "mpesa_transactions"

     id = Column(Integer, primary_key=True, autoincrement=True)
     trans_id = Column(String(64), nullable=False, unique=True, index=True)  # idempotency key
     transaction_type = Column(String(64), nullable=True)
     trans_time = Column(String(32), nullable=True)  # provider format YYYYMMDDHHMMSS
     amount = Column(Numeric(12, 2), nullable=False)
     business_short_code = Column(String(16), nullable=True)
     bill_ref_number = Column(String(64), nullable=True, index=True)
     org_account_balance = Column(Numeric(14, 2), nullable=True)
     third_party_trans_id = Column(String(64), nullable=True)
     msisdn = Column(String(20), nullable=True)
     first_name = Column(String(100), nullable=True)
     middle_name = Column(String(100), nullable=True)
     last_name = Column(String(100), nullable=True)
     raw_payload = Column(JSON, nullable=False, default=dict)
     source = Column(
          Enum(TransactionSource, name="mpesa_transaction_source", values_callable=_enum_values),
          nullable=False,
          default=TransactionSource.C2B,
     )

     # Allocation (set once by the reconciliation service)
     is_allocated = Column(Boolean, nullable=False, default=False, index=True)
     allocated_to_invoice_id = Column(
          Integer,
          ForeignKey("invoices.id", ondelete="RESTRICT"),
          nullable=True,
          index=True
     )
     allocated_at = Column(DateTime, nullable=True)
     allocated_by = Column(String(64), nullable=True)
     review_reason = Column(
          Enum(ReviewReason, name="mpesa_review_reason", values_callable=_enum_values),
          nullable=True,
     )

     created_at = Column(DateTime, server_default=func.now(), nullable=False)

     invoice = relationship("Invoice")

     @property
     def payer_name(self) -> str:
          parts = [self.first_name, self.middle_name, self.last_name]
          return " ".join(p for p in parts if p)

     def __repr__(self):
          return (
               f"<ProviderTransaction(trans_id='{self.trans_id}', amount={self.amount}, "
               f"bill_ref='{self.bill_ref_number}', allocated={self.is_allocated})>"
          )


class StkPushRequest(TimestampMixin, Base):
     """Outbound STK push; maps the provider callback back to its invoice."""
     __tablename__ = "mpesa_stk_requests"

     id = Column(Integer, primary_key=True, autoincrement=True)
     checkout_request_id = Column(String(64), nullable=False, unique=True, index=True)
     merchant_request_id = Column(String(64), nullable=True)
     phone_number = Column(String(20), nullable=False)
     amount = Column(Numeric(12, 2), nullable=False)
     account_reference = Column(String(64), nullable=False, index=True)
     status = Column(
          Enum(StkRequestStatus, name="mpesa_stk_status", values_callable=_enum_values),
          nullable=False,
          default=StkRequestStatus.PENDING,
     )
     result_code = Column(Integer, nullable=True)
     result_desc = Column(String(255), nullable=True)
     mpesa_receipt_number = Column(String(64), nullable=True)

     def __repr__(self):
          return f"<StkPushRequest(checkout='{self.checkout_request_id}', status='{self.status.value}')>"
