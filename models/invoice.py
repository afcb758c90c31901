# models/invoice.py
import enum
from decimal import Decimal

from sqlalchemy import (
     CheckConstraint,
     Column,
     Date,
     Enum,
     ForeignKey,
     Integer,
     Numeric,
     String,
     Text,
)
from sqlalchemy.orm import relationship

from .base import Base, TimestampMixin


def _enum_values(enum_cls):
     return [member.value for member in enum_cls]


class InvoiceStatus(str, enum.Enum):
     """Enumeration for invoice payment status."""
     DRAFT = "draft"
     PENDING = "pending"
     PARTIAL = "partial"
     PAID = "paid"
     CANCELLED = "cancelled"
     OVERDUE = "overdue"


# Statuses that never accept a payment
CLOSED_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED)


class InvoiceItemType(str, enum.Enum):
     CONSULTATION = "consultation"
     PROCEDURE = "procedure"
     LAB_TEST = "lab_test"
     DRUG = "drug"
     OTHER = "other"


class Invoice(TimestampMixin, Base):
     """
     Invoice model - billable record for a patient visit.

     ``invoice_number`` doubles as the M-PESA account reference (BillRefNumber)
     payers type at the paybill, so it must stay unique and human readable.
     Balances are only changed by payment application (see InvoiceService).
     """
     __tablename__ = "invoices"
     __table_args__ = (
          CheckConstraint("balance_amount >= 0", name="ck_invoices_balance_non_negative"),
          CheckConstraint("paid_amount >= 0", name="ck_invoices_paid_non_negative"),
     )

     id = Column(Integer, primary_key=True, autoincrement=True)
     invoice_number = Column(String(32), nullable=False, unique=True, index=True)

     # Patient / visit live in the clinical service; referenced by id only
     patient_id = Column(String(64), nullable=False, index=True)
     visit_id = Column(String(64), nullable=True)

     # Amounts
     subtotal = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
     tax = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
     discount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
     total_amount = Column(Numeric(12, 2), nullable=False)
     paid_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
     balance_amount = Column(Numeric(12, 2), nullable=False)

     status = Column(
          Enum(
               InvoiceStatus,
               name="invoice_status",
               create_constraint=True,
               values_callable=_enum_values,
          ),
          default=InvoiceStatus.PENDING,
          nullable=False,
          index=True
     )
     due_date = Column(Date, nullable=True, index=True)
     notes = Column(Text, nullable=True)
     created_by = Column(String(64), nullable=False)

     # Relationships
     items = relationship(
          "InvoiceItem",
          back_populates="invoice",
          cascade="all, delete-orphan",
          order_by="InvoiceItem.id",
     )
     payments = relationship(
          "Payment",
          back_populates="invoice",
          order_by="Payment.id",
     )

     def __repr__(self):
          return (
               f"<Invoice(id={self.id}, number='{self.invoice_number}', "
               f"total={self.total_amount}, balance={self.balance_amount}, status='{self.status.value}')>"
          )

     @property
     def is_payable(self) -> bool:
          """True when the invoice is issued, open and has a balance left."""
          return self.status not in CLOSED_STATUSES and self.balance_amount > 0

     @property
     def is_overdue(self) -> bool:
          """Check if invoice is past due date and nothing has been paid."""
          from datetime import date
          return (
               self.status == InvoiceStatus.PENDING
               and self.due_date is not None
               and self.due_date < date.today()
          )

     def mark_as_overdue(self) -> None:
          """Mark the invoice as overdue."""
          self.status = InvoiceStatus.OVERDUE


class InvoiceItem(Base):
     """Billable line on an invoice (consultation, lab test, drug...)."""
     __tablename__ = "invoice_items"

     id = Column(Integer, primary_key=True, autoincrement=True)
     invoice_id = Column(
          Integer,
          ForeignKey("invoices.id", ondelete="CASCADE"),
          nullable=False,
          index=True
     )
     item_type = Column(
          Enum(InvoiceItemType, name="invoice_item_type", values_callable=_enum_values),
          nullable=False,
     )
     item_ref = Column(String(64), nullable=True)  # catalog id of the drug/test/procedure
     description = Column(String(255), nullable=False)
     quantity = Column(Integer, nullable=False, default=1)
     unit_price = Column(Numeric(12, 2), nullable=False)
     discount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
     total_price = Column(Numeric(12, 2), nullable=False)

     invoice = relationship("Invoice", back_populates="items")

     def __repr__(self):
          return f"<InvoiceItem(id={self.id}, description='{self.description}', total={self.total_price})>"
