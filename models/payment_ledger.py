# models/payment_ledger.py
"""
PaymentLedger model - blockchain-like immutable record of completed payments.

Each record stores a SHA-256 hash of
(payment_id + invoice_id + amount + transaction_reference + timestamp)
and a reference to the previous record's hash, forming a chain.
Records are append-only; modification is prevented at the application layer.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, func
from sqlalchemy.orm import relationship
from .base import Base


class PaymentLedger(Base):
     """
     Immutable payment ledger entry. Created when a payment is completed.
     Chain is formed via previous_hash -> next record's previous_hash.
     """
     __tablename__ = "payment_ledger"

     id = Column(Integer, primary_key=True, autoincrement=True)
     payment_id = Column(
          Integer,
          ForeignKey("payments.id", ondelete="RESTRICT"),  # Prevent delete if ledger exists
          nullable=False,
          unique=True,  # One ledger entry per payment
          index=True
     )
     transaction_hash = Column(String(64), nullable=False, unique=True, index=True)  # SHA-256 hex length
     previous_hash = Column(String(64), nullable=False, unique=True, index=True)  # "0" for genesis; one successor per entry
     timestamp = Column(DateTime, server_default=func.now(), nullable=False)

     # Relationships
     payment = relationship("Payment", back_populates="ledger_entry", uselist=False)

     def __repr__(self):
          return f"<PaymentLedger(id={self.id}, payment_id={self.payment_id}, hash={self.transaction_hash[:16]}...)>"
