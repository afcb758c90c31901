# services/receipt_service.py
"""Receipt data for a completed payment (rendering happens in the client)."""
from decimal import Decimal

from sqlalchemy.orm import Session

from exceptions import PaymentNotFound
from models import Payment
from models.payment import PaymentMethod, PaymentStatus


def build_receipt(db: Session, payment_id: int, business_name: str = "") -> dict:
     """
     Collect everything a printed receipt shows for one payment.

     ``balance`` is the invoice balance right after this payment, so a
     reprint of an older receipt still shows what was owed at the time.
     """
     payment = db.query(Payment).filter(Payment.id == payment_id).first()
     if payment is None:
          raise PaymentNotFound(f"Payment with ID {payment_id} not found")

     invoice = payment.invoice
     paid_so_far = sum(
          (p.amount for p in invoice.payments if p.id <= payment.id and p.status == PaymentStatus.COMPLETED),
          Decimal("0.00"),
     )

     return {
          "business_name": business_name,
          "receipt_number": payment.payment_number,
          "invoice_number": invoice.invoice_number,
          "patient_id": invoice.patient_id,
          "date": payment.received_at,
          "cashier": payment.received_by,
          "items": [
               {
                    "description": item.description,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "total": item.total_price,
               }
               for item in invoice.items
          ],
          "subtotal": invoice.subtotal,
          "tax": invoice.tax,
          "discount": invoice.discount,
          "total": invoice.total_amount,
          "amount_paid": payment.amount,
          "balance": max(invoice.total_amount - paid_so_far, Decimal("0.00")),
          "payment_method": payment.method.value,
          "transaction_id": payment.transaction_reference if payment.method == PaymentMethod.MPESA else None,
     }
