# models/payment.py
import enum

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import relationship

from .base import Base
from .invoice import _enum_values


class PaymentMethod(str, enum.Enum):
     CASH = "cash"
     MPESA = "mpesa"
     CARD = "card"
     INSURANCE = "insurance"
     BANK_TRANSFER = "bank_transfer"


class PaymentStatus(str, enum.Enum):
     PENDING = "pending"
     COMPLETED = "completed"
     FAILED = "failed"
     REFUNDED = "refunded"


class Payment(Base):
     """
     Payment received against an invoice.

     Rows are append-only: once COMPLETED a payment is never edited.
     ``transaction_reference`` is unique so that a provider transaction id
     (M-PESA TransID) can only ever be applied once.
     """
     __tablename__ = "payments"

     id = Column(Integer, primary_key=True, autoincrement=True)
     payment_number = Column(String(32), nullable=False, unique=True, index=True)
     invoice_id = Column(
          Integer,
          ForeignKey("invoices.id", ondelete="RESTRICT"),
          nullable=False,
          index=True
     )
     amount = Column(Numeric(12, 2), nullable=False)
     method = Column(
          Enum(PaymentMethod, name="payment_method", values_callable=_enum_values),
          nullable=False,
     )
     status = Column(
          Enum(PaymentStatus, name="payment_status", values_callable=_enum_values),
          default=PaymentStatus.COMPLETED,
          nullable=False,
     )
     transaction_reference = Column(String(64), nullable=False, unique=True, index=True)
     payer_phone = Column(String(20), nullable=True)
     received_by = Column(String(64), nullable=False)
     received_at = Column(DateTime, server_default=func.now(), nullable=False)
     notes = Column(Text, nullable=True)

     # Relationships
     invoice = relationship("Invoice", back_populates="payments")
     ledger_entry = relationship(
          "PaymentLedger",
          back_populates="payment",
          uselist=False,
     )

     def __repr__(self):
          return (
               f"<Payment(id={self.id}, number='{self.payment_number}', amount={self.amount}, "
               f"method='{self.method.value}', reference='{self.transaction_reference}')>"
          )
