# routers/invoices.py
"""
Invoice API routes.

Billing staff create and manage patient invoices; payments change balances
only through the payment and M-PESA endpoints.
"""
from datetime import date, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from config import Settings
from database import get_session
from dependencies import current_user_id, get_settings, require_role, verify_token
from models import Payment
from models.invoice import InvoiceStatus
from schemas.invoice import (
     FinancialSummaryResponse,
     InvoiceCancel,
     InvoiceCreate,
     InvoiceListResponse,
     InvoiceResponse,
     LedgerVerifyResponse,
     OverdueUpdateResponse,
     PatientBalanceResponse,
)
from schemas.payment import PaymentResponse
from services.invoice_service import InvoiceService
from services.ledger_service import verify_full_chain, verify_ledger_entry

router = APIRouter(prefix="/api/invoices", tags=["invoices"])


@router.post(
     "",
     response_model=InvoiceResponse,
     status_code=status.HTTP_201_CREATED,
     summary="Create a new invoice"
)
def create_invoice(
     invoice_data: InvoiceCreate,
     db: Session = Depends(get_session),
     settings: Settings = Depends(get_settings),
     token: dict = Depends(verify_token)
):
     """
     Create an invoice for a patient visit.

     - **items**: billable lines; each total is quantity x unit price less line discount
     - **discount**: invoice-level discount applied after VAT
     - **draft**: create as draft; it must be issued before it can be paid
     """
     invoice = InvoiceService.create_invoice(
          db,
          patient_id=invoice_data.patient_id,
          items=invoice_data.items,
          created_by=current_user_id(token),
          visit_id=invoice_data.visit_id,
          discount=invoice_data.discount,
          due_date=invoice_data.due_date,
          notes=invoice_data.notes,
          draft=invoice_data.draft,
          vat_rate=settings.vat_rate,
     )
     db.commit()
     db.refresh(invoice)
     return invoice


@router.get(
     "",
     response_model=InvoiceListResponse,
     summary="List invoices with filters"
)
def list_invoices(
     patient_id: Optional[str] = Query(None, description="Filter by patient ID"),
     status: Optional[InvoiceStatus] = Query(None, description="Filter by status"),
     start_date: Optional[date] = Query(None, description="Created on or after"),
     end_date: Optional[date] = Query(None, description="Created on or before"),
     page: int = Query(1, ge=1, description="Page number"),
     page_size: int = Query(50, ge=1, le=100, description="Items per page"),
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     invoices, total = InvoiceService.list_invoices(
          db,
          patient_id=patient_id,
          status=status,
          start_date=start_date,
          end_date=end_date,
          page=page,
          page_size=page_size,
     )
     return InvoiceListResponse(
          invoices=[InvoiceResponse.model_validate(inv) for inv in invoices],
          total=total,
          page=page,
          page_size=page_size
     )


@router.get(
     "/summary",
     response_model=FinancialSummaryResponse,
     summary="Invoiced, collected and outstanding totals"
)
def financial_summary(
     start_date: Optional[date] = Query(None, description="Defaults to 30 days ago"),
     end_date: Optional[date] = Query(None, description="Defaults to today"),
     db: Session = Depends(get_session),
     token: dict = Depends(require_role("admin", "accountant"))
):
     end_date = end_date or date.today()
     start_date = start_date or end_date - timedelta(days=30)
     if start_date > end_date:
          raise HTTPException(
               status_code=status.HTTP_400_BAD_REQUEST,
               detail="start_date must not be after end_date"
          )
     return InvoiceService.financial_summary(db, start_date, end_date)


@router.post(
     "/mark-overdue",
     response_model=OverdueUpdateResponse,
     summary="Mark unpaid invoices past their due date as overdue"
)
def mark_overdue(
     db: Session = Depends(get_session),
     token: dict = Depends(require_role("admin", "accountant"))
):
     count = InvoiceService.mark_overdue_invoices(db)
     db.commit()
     return OverdueUpdateResponse(marked_overdue=count)


@router.get(
     "/patient/{patient_id}/balance",
     response_model=PatientBalanceResponse,
     summary="Outstanding balance for a patient"
)
def patient_balance(
     patient_id: str,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     return InvoiceService.calculate_patient_balance(db, patient_id)


# ---------------------------------------------------------------------------
# Payment ledger verification (hash chain)
# ---------------------------------------------------------------------------

@router.get(
     "/ledger/verify-chain",
     response_model=LedgerVerifyResponse,
     summary="Verify full payment ledger chain"
)
def verify_ledger_chain(
     db: Session = Depends(get_session),
     token: dict = Depends(require_role("admin", "accountant")),
):
     """
     Recompute hashes for all ledger entries and verify the chain.
     Returns verification result and number of entries checked.
     """
     valid, message, count = verify_full_chain(db)
     return LedgerVerifyResponse(valid=valid, message=message, entries_checked=count)


@router.get(
     "/number/{invoice_number}",
     response_model=InvoiceResponse,
     summary="Get invoice by number"
)
def get_invoice_by_number(
     invoice_number: str,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     return InvoiceService.get_by_number(db, invoice_number)


@router.get(
     "/{invoice_id}",
     response_model=InvoiceResponse,
     summary="Get invoice by ID"
)
def get_invoice(
     invoice_id: int,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     return InvoiceService.get_by_id(db, invoice_id)


@router.post(
     "/{invoice_id}/issue",
     response_model=InvoiceResponse,
     summary="Issue a draft invoice"
)
def issue_invoice(
     invoice_id: int,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     invoice = InvoiceService.issue_invoice(db, invoice_id)
     db.commit()
     db.refresh(invoice)
     return invoice


@router.post(
     "/{invoice_id}/cancel",
     response_model=InvoiceResponse,
     summary="Cancel an unpaid invoice"
)
def cancel_invoice(
     invoice_id: int,
     body: InvoiceCancel,
     db: Session = Depends(get_session),
     token: dict = Depends(require_role("admin", "accountant"))
):
     """Cancellation is refused once any payment has been received."""
     invoice = InvoiceService.cancel_invoice(db, invoice_id, body.reason, current_user_id(token))
     db.commit()
     db.refresh(invoice)
     return invoice


@router.get(
     "/{invoice_id}/payments",
     response_model=List[PaymentResponse],
     summary="Payments received against an invoice"
)
def list_invoice_payments(
     invoice_id: int,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     invoice = InvoiceService.get_by_id(db, invoice_id)
     payments = (
          db.query(Payment)
          .filter(Payment.invoice_id == invoice.id)
          .order_by(Payment.id)
          .all()
     )
     return [PaymentResponse.from_payment(p) for p in payments]


@router.get(
     "/{invoice_id}/ledger/verify",
     response_model=LedgerVerifyResponse,
     summary="Verify the ledger entries of an invoice's payments"
)
def verify_invoice_ledger(
     invoice_id: int,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token),
):
     """
     Recompute the hash of every payment on the invoice and check each
     entry's link to the previous record.
     """
     invoice = InvoiceService.get_by_id(db, invoice_id)
     payments = db.query(Payment).filter(Payment.invoice_id == invoice.id).order_by(Payment.id).all()
     if not payments:
          raise HTTPException(
               status_code=status.HTTP_404_NOT_FOUND,
               detail="No ledger entry found for this invoice (no payments recorded)"
          )

     for payment in payments:
          valid, message = verify_ledger_entry(db, payment_id=payment.id)
          if not valid:
               return LedgerVerifyResponse(
                    valid=False,
                    message=f"Payment {payment.payment_number}: {message}",
                    entries_checked=len(payments),
               )
     return LedgerVerifyResponse(valid=True, message="Verification passed", entries_checked=len(payments))
