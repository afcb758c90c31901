# routers/payments.py
"""
Counter payment API.

POST /api/payments: record a payment taken at the cashier desk (cash, card,
insurance, bank transfer, or an M-PESA code read out by the payer). The
invoice balance is updated, a ledger record is appended and the receipt
number is returned.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings
from database import get_session
from dependencies import current_user_id, get_settings, require_role, verify_token
from exceptions import PaymentNotFound
from models import Payment
from models.payment import PaymentMethod
from schemas.payment import PaymentCreate, PaymentListResponse, PaymentResponse
from schemas.receipt import ReceiptResponse
from services.invoice_service import InvoiceService
from services.notifier import CompletionSignal, invoice_key
from services.receipt_service import build_receipt

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post(
     "",
     response_model=PaymentResponse,
     status_code=status.HTTP_201_CREATED,
     summary="Record a counter payment",
)
def record_payment(
     body: PaymentCreate,
     request: Request,
     db: Session = Depends(get_session),
     token: dict = Depends(require_role("admin", "accountant", "cashier")),
):
     """
     Apply a payment to an invoice.

     Returns 409 if the invoice is settled, closed, or the amount exceeds the
     balance, and when the reference has already been used.
     """
     try:
          invoice, payment = InvoiceService.apply_payment(
               db,
               body.invoice_id,
               body.amount,
               body.method,
               reference=body.reference,
               payer_phone=body.payer_phone,
               received_by=current_user_id(token),
               notes=body.notes,
          )
          db.commit()
     except IntegrityError:
          db.rollback()
          raise HTTPException(
               status_code=status.HTTP_409_CONFLICT,
               detail=f"Payment reference '{body.reference}' has already been recorded"
          )

     request.app.state.notifier.publish(CompletionSignal(
          key=invoice_key(invoice.invoice_number),
          succeeded=True,
          invoice_number=invoice.invoice_number,
          transaction_id=payment.transaction_reference,
          amount=payment.amount,
          message="Payment received",
     ))
     db.refresh(payment)
     return PaymentResponse.from_payment(payment)


@router.get(
     "",
     response_model=PaymentListResponse,
     summary="List payments",
)
def list_payments(
     invoice_id: Optional[int] = Query(None, description="Filter by invoice"),
     method: Optional[PaymentMethod] = Query(None, description="Filter by payment method"),
     start_date: Optional[date] = Query(None),
     end_date: Optional[date] = Query(None),
     page: int = Query(1, ge=1),
     page_size: int = Query(50, ge=1, le=100),
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token),
):
     query = db.query(Payment)
     if invoice_id:
          query = query.filter(Payment.invoice_id == invoice_id)
     if method:
          query = query.filter(Payment.method == method)
     if start_date:
          query = query.filter(Payment.received_at >= start_date)
     if end_date:
          query = query.filter(Payment.received_at < date.fromordinal(end_date.toordinal() + 1))

     total = query.count()
     offset = (page - 1) * page_size
     payments = query.order_by(Payment.id.desc()).offset(offset).limit(page_size).all()
     return PaymentListResponse(
          payments=[PaymentResponse.from_payment(p) for p in payments],
          total=total,
          page=page,
          page_size=page_size,
     )


@router.get(
     "/{payment_id}",
     response_model=PaymentResponse,
     summary="Get payment by ID",
)
def get_payment(
     payment_id: int,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token),
):
     payment = db.query(Payment).filter(Payment.id == payment_id).first()
     if payment is None:
          raise PaymentNotFound(f"Payment with ID {payment_id} not found")
     return PaymentResponse.from_payment(payment)


@router.get(
     "/{payment_id}/receipt",
     response_model=ReceiptResponse,
     summary="Receipt data for a payment",
)
def get_receipt(
     payment_id: int,
     db: Session = Depends(get_session),
     settings: Settings = Depends(get_settings),
     token: dict = Depends(verify_token),
):
     return build_receipt(db, payment_id, business_name=settings.business_name)
