# services/invoice_service.py
"""
Invoice Service - business logic layer for invoice operations.

This is the invoice ledger: invoice creation, lookups, payment application
and lifecycle rules, kept separate from the API layer. Methods flush but do
not commit; the caller owns the transaction.
"""
import logging
import uuid
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import case, func, update
from sqlalchemy.orm import Session

from exceptions import (
     AlreadySettled,
     InvalidPaymentAmount,
     InvoiceNotFound,
     InvoiceNotPayable,
     OverpaymentRejected,
)
from models import Invoice, InvoiceItem, Payment
from models.invoice import CLOSED_STATUSES, InvoiceStatus
from models.payment import PaymentMethod, PaymentStatus
from services import audit_service
from services.ledger_service import append_payment_record

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
DEFAULT_VAT_RATE = Decimal("0.16")  # 16% VAT in Kenya


def to_money(value) -> Decimal:
     """Round any numeric input to shillings and cents."""
     return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def generate_payment_number() -> str:
     return f"PAY-{uuid.uuid4().hex[:12].upper()}"


class InvoiceService:
     """Service class for invoice-related business logic."""

     @staticmethod
     def generate_invoice_number(db: Session, today: Optional[date] = None) -> str:
          """
          Next invoice number for the month: INV-YYYYMM-NNNN.

          The sequence continues from the highest number already issued this
          month so that gaps (cancelled drafts) never cause a reuse.
          """
          today = today or date.today()
          prefix = f"INV-{today.year}{today.month:02d}-"
          last = (
               db.query(Invoice.invoice_number)
               .filter(Invoice.invoice_number.like(f"{prefix}%"))
               .order_by(Invoice.invoice_number.desc())
               .first()
          )
          sequence = 1
          if last:
               try:
                    sequence = int(last[0][len(prefix):]) + 1
               except ValueError:
                    sequence = db.query(Invoice).filter(Invoice.invoice_number.like(f"{prefix}%")).count() + 1
          return f"{prefix}{sequence:04d}"

     @staticmethod
     def create_invoice(
          db: Session,
          patient_id: str,
          items: Iterable,
          created_by: str,
          visit_id: Optional[str] = None,
          discount: Decimal = Decimal("0"),
          due_date: Optional[date] = None,
          notes: Optional[str] = None,
          draft: bool = False,
          vat_rate: Decimal = DEFAULT_VAT_RATE,
          invoice_number: Optional[str] = None,
     ) -> Invoice:
          """
          Create an invoice with its line items.

          Args:
               db: SQLAlchemy database session
               patient_id: Patient being billed
               items: Line items (objects with item_type, description, quantity,
                    unit_price, discount and optional item_ref)
               created_by: Staff user id
               discount: Invoice-level discount applied after tax
               draft: Create as DRAFT (not payable until issued)
               vat_rate: Tax rate applied to the subtotal
               invoice_number: Explicit number (imports); generated when omitted

          Returns:
               Created Invoice object

          Raises:
               InvalidPaymentAmount: If there are no items or the total is not positive
          """
          line_items = []
          subtotal = Decimal("0.00")
          for item in items:
               item_discount = to_money(getattr(item, "discount", 0) or 0)
               total_price = to_money(Decimal(item.quantity) * to_money(item.unit_price) - item_discount)
               if total_price < 0:
                    raise InvalidPaymentAmount(f"Line discount exceeds price for '{item.description}'")
               subtotal += total_price
               line_items.append(InvoiceItem(
                    item_type=item.item_type,
                    item_ref=getattr(item, "item_ref", None),
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=to_money(item.unit_price),
                    discount=item_discount,
                    total_price=total_price,
               ))

          if not line_items:
               raise InvalidPaymentAmount("At least one invoice item is required")

          tax = to_money(subtotal * vat_rate)
          discount = to_money(discount or 0)
          total = to_money(subtotal + tax - discount)
          if total <= 0:
               raise InvalidPaymentAmount("Invoice total must be greater than zero")

          invoice = Invoice(
               invoice_number=invoice_number or InvoiceService.generate_invoice_number(db),
               patient_id=patient_id,
               visit_id=visit_id,
               subtotal=to_money(subtotal),
               tax=tax,
               discount=discount,
               total_amount=total,
               paid_amount=Decimal("0.00"),
               balance_amount=total,
               status=InvoiceStatus.DRAFT if draft else InvoiceStatus.PENDING,
               due_date=due_date,
               notes=notes,
               created_by=created_by,
               items=line_items,
          )
          db.add(invoice)
          db.flush()  # Flush to get the ID without committing
          audit_service.record(
               db, created_by, audit_service.INVOICE_CREATED, "invoices", invoice.id,
               new_data={
                    "invoice_number": invoice.invoice_number,
                    "patient_id": patient_id,
                    **audit_service.invoice_snapshot(invoice),
               },
          )

          logger.info("Invoice %s created for patient %s, total %s", invoice.invoice_number, patient_id, total)
          return invoice

     @staticmethod
     def get_by_id(db: Session, invoice_id: int) -> Invoice:
          invoice = db.query(Invoice).filter(Invoice.id == invoice_id).first()
          if invoice is None:
               raise InvoiceNotFound(f"Invoice with ID {invoice_id} not found")
          return invoice

     @staticmethod
     def get_by_number(db: Session, invoice_number: str) -> Invoice:
          """Look up an invoice by its number (the M-PESA account reference)."""
          invoice = (
               db.query(Invoice)
               .filter(Invoice.invoice_number == invoice_number.strip().upper())
               .first()
          )
          if invoice is None:
               raise InvoiceNotFound(f"Invoice {invoice_number} not found")
          return invoice

     @staticmethod
     def find_by_number(db: Session, invoice_number: Optional[str]) -> Optional[Invoice]:
          if not invoice_number:
               return None
          try:
               return InvoiceService.get_by_number(db, invoice_number)
          except InvoiceNotFound:
               return None

     @staticmethod
     def _lock(db: Session, invoice_id: int) -> Invoice:
          """Load the invoice row under a row lock, bypassing stale identity-map state."""
          invoice = (
               db.query(Invoice)
               .filter(Invoice.id == invoice_id)
               .with_for_update()
               .populate_existing()
               .first()
          )
          if invoice is None:
               raise InvoiceNotFound(f"Invoice with ID {invoice_id} not found")
          return invoice

     @staticmethod
     def ensure_can_accept(invoice: Invoice, amount: Decimal) -> None:
          """
          Raise if ``amount`` cannot be applied to ``invoice``.

          Raises:
               InvoiceNotPayable: draft or cancelled invoice
               AlreadySettled: nothing left to pay
               OverpaymentRejected: amount exceeds the balance
          """
          if invoice.status in CLOSED_STATUSES:
               raise InvoiceNotPayable(
                    f"Invoice {invoice.invoice_number} is {invoice.status.value} and cannot take payments"
               )
          if invoice.balance_amount <= 0 or invoice.status == InvoiceStatus.PAID:
               raise AlreadySettled(f"Invoice {invoice.invoice_number} is already fully paid")
          if amount > invoice.balance_amount:
               raise OverpaymentRejected(
                    f"Payment of {amount} exceeds balance {invoice.balance_amount} on invoice {invoice.invoice_number}"
               )

     @staticmethod
     def apply_payment(
          db: Session,
          invoice_id: int,
          amount,
          method: PaymentMethod,
          reference: Optional[str] = None,
          payer_phone: Optional[str] = None,
          received_by: str = "SYSTEM",
          notes: Optional[str] = None,
     ) -> Tuple[Invoice, Payment]:
          """
          Apply a payment to an invoice and record it.

          The balance is moved by one conditional UPDATE
          (``balance_amount >= amount``) computed in the database, after the
          row has been locked with SELECT ... FOR UPDATE where supported, so
          two concurrent payments can never overwrite each other's result or
          drive the balance negative.

          Returns:
               (invoice, payment) with the invoice refreshed

          Raises:
               InvalidPaymentAmount, InvoiceNotFound, InvoiceNotPayable,
               AlreadySettled, OverpaymentRejected
               sqlalchemy.exc.IntegrityError: reference already used by another payment
          """
          amount = to_money(amount)
          if amount <= 0:
               raise InvalidPaymentAmount("Payment amount must be greater than zero")

          invoice = InvoiceService._lock(db, invoice_id)
          InvoiceService.ensure_can_accept(invoice, amount)
          before = audit_service.invoice_snapshot(invoice)

          new_balance = func.round(Invoice.balance_amount - amount, 2)
          result = db.execute(
               update(Invoice)
               .where(
                    Invoice.id == invoice.id,
                    Invoice.balance_amount >= amount,
                    Invoice.status.notin_(CLOSED_STATUSES),
               )
               .values(
                    paid_amount=func.round(Invoice.paid_amount + amount, 2),
                    balance_amount=new_balance,
                    status=case(
                         (new_balance <= 0, InvoiceStatus.PAID.value),
                         else_=InvoiceStatus.PARTIAL.value,
                    ),
               )
               .execution_options(synchronize_session=False)
          )
          if result.rowcount == 0:
               # Balance moved underneath us; report what it is now
               invoice = InvoiceService._lock(db, invoice_id)
               InvoiceService.ensure_can_accept(invoice, amount)
               raise OverpaymentRejected(f"Invoice {invoice.invoice_number} changed while applying payment")

          db.refresh(invoice)

          payment_number = generate_payment_number()
          payment = Payment(
               payment_number=payment_number,
               invoice_id=invoice.id,
               amount=amount,
               method=method,
               status=PaymentStatus.COMPLETED,
               transaction_reference=reference or payment_number,
               payer_phone=payer_phone,
               received_by=received_by,
               received_at=datetime.utcnow().replace(microsecond=0),
               notes=notes,
          )
          db.add(payment)
          db.flush()
          append_payment_record(db, payment)
          audit_service.record(
               db, received_by, audit_service.PAYMENT_RECEIVED, "payments", payment.id,
               old_data=before,
               new_data={
                    "invoice_number": invoice.invoice_number,
                    "amount": amount,
                    "method": method,
                    "reference": payment.transaction_reference,
                    **audit_service.invoice_snapshot(invoice),
               },
          )

          logger.info(
               "Applied %s %s to invoice %s (balance now %s, status %s)",
               method.value, amount, invoice.invoice_number, invoice.balance_amount, invoice.status.value,
          )
          return invoice, payment

     @staticmethod
     def issue_invoice(db: Session, invoice_id: int) -> Invoice:
          """Move a DRAFT invoice to PENDING so it can be paid."""
          invoice = InvoiceService._lock(db, invoice_id)
          if invoice.status != InvoiceStatus.DRAFT:
               raise InvoiceNotPayable(f"Only draft invoices can be issued ({invoice.invoice_number} is {invoice.status.value})")
          invoice.status = InvoiceStatus.PENDING
          db.flush()
          return invoice

     @staticmethod
     def cancel_invoice(db: Session, invoice_id: int, reason: str, cancelled_by: str) -> Invoice:
          """
          Cancel an invoice that has not received any payment.

          Raises:
               InvoiceNotPayable: already cancelled, or money has been paid
                    against it (process a refund instead)
          """
          invoice = InvoiceService._lock(db, invoice_id)
          if invoice.status == InvoiceStatus.CANCELLED:
               raise InvoiceNotPayable(f"Invoice {invoice.invoice_number} is already cancelled")
          if invoice.paid_amount > 0:
               raise InvoiceNotPayable("Cannot cancel invoice with payments. Process refund instead.")

          before = audit_service.invoice_snapshot(invoice)
          invoice.status = InvoiceStatus.CANCELLED
          note = f"Cancelled by {cancelled_by}: {reason}"
          invoice.notes = f"{invoice.notes}\n\n{note}" if invoice.notes else note
          db.flush()
          audit_service.record(
               db, cancelled_by, audit_service.INVOICE_CANCELLED, "invoices", invoice.id,
               old_data=before,
               new_data={"reason": reason, **audit_service.invoice_snapshot(invoice)},
          )
          logger.info("Invoice %s cancelled by %s", invoice.invoice_number, cancelled_by)
          return invoice

     @staticmethod
     def mark_overdue_invoices(db: Session, today: Optional[date] = None) -> int:
          """
          Mark all unpaid pending invoices past their due date as OVERDUE.

          This should be called by a scheduled job daily.

          Returns:
               Number of invoices marked as overdue
          """
          today = today or date.today()

          overdue_invoices = db.query(Invoice).filter(
               Invoice.status == InvoiceStatus.PENDING,
               Invoice.paid_amount == 0,
               Invoice.due_date.isnot(None),
               Invoice.due_date < today
          ).all()

          for invoice in overdue_invoices:
               invoice.mark_as_overdue()
          db.flush()

          return len(overdue_invoices)

     @staticmethod
     def list_invoices(
          db: Session,
          patient_id: Optional[str] = None,
          status: Optional[InvoiceStatus] = None,
          start_date: Optional[date] = None,
          end_date: Optional[date] = None,
          page: int = 1,
          page_size: int = 50,
     ) -> Tuple[List[Invoice], int]:
          query = db.query(Invoice)
          if patient_id:
               query = query.filter(Invoice.patient_id == patient_id)
          if status:
               query = query.filter(Invoice.status == status)
          if start_date:
               query = query.filter(func.date(Invoice.created_at) >= start_date)
          if end_date:
               query = query.filter(func.date(Invoice.created_at) <= end_date)

          total = query.count()
          offset = (page - 1) * page_size
          invoices = query.order_by(Invoice.id.desc()).offset(offset).limit(page_size).all()
          return invoices, total

     @staticmethod
     def calculate_patient_balance(db: Session, patient_id: str) -> dict:
          """
          Calculate the total balance owed by a patient.

          Returns:
               Dictionary with balance information
          """
          invoices = (
               db.query(Invoice)
               .filter(Invoice.patient_id == patient_id, Invoice.status.notin_(CLOSED_STATUSES))
               .all()
          )
          open_invoices = [inv for inv in invoices if inv.balance_amount > 0]
          overdue = [inv for inv in invoices if inv.status == InvoiceStatus.OVERDUE]

          return {
               "patient_id": patient_id,
               "total_owed": sum((inv.balance_amount for inv in open_invoices), Decimal("0.00")),
               "total_paid": sum((inv.paid_amount for inv in invoices), Decimal("0.00")),
               "overdue_amount": sum((inv.balance_amount for inv in overdue), Decimal("0.00")),
               "open_count": len(open_invoices),
               "overdue_count": len(overdue),
               "total_invoices": len(invoices),
          }

     @staticmethod
     def financial_summary(db: Session, start_date: date, end_date: date) -> dict:
          """Invoiced / collected / outstanding totals for a date range."""
          invoices = (
               db.query(Invoice)
               .filter(
                    func.date(Invoice.created_at) >= start_date,
                    func.date(Invoice.created_at) <= end_date,
                    Invoice.status.notin_(CLOSED_STATUSES),
               )
               .all()
          )
          payments = (
               db.query(Payment)
               .filter(
                    func.date(Payment.received_at) >= start_date,
                    func.date(Payment.received_at) <= end_date,
                    Payment.status == PaymentStatus.COMPLETED,
               )
               .all()
          )

          by_method = {}
          for payment in payments:
               by_method[payment.method.value] = by_method.get(payment.method.value, Decimal("0.00")) + payment.amount

          return {
               "start_date": start_date,
               "end_date": end_date,
               "total_invoiced": sum((inv.total_amount for inv in invoices), Decimal("0.00")),
               "total_collected": sum((p.amount for p in payments), Decimal("0.00")),
               "total_outstanding": sum((inv.balance_amount for inv in invoices), Decimal("0.00")),
               "payments_by_method": by_method,
               "invoice_count": len(invoices),
               "payment_count": len(payments),
          }
