# routers/mpesa.py
"""
M-PESA API.

Public callbacks (called by Safaricom, always answered with ResultCode 0):
     POST /api/mpesa/stk-callback
     POST /api/mpesa/c2b-validation
     POST /api/mpesa/c2b-confirmation

Staff endpoints (JWT): STK push and status, transaction queue, manual
allocation, statistics, paybill instructions and C2B URL registration.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from config import Settings
from database import get_session
from dependencies import (
     current_user_id,
     get_gateway,
     get_reconciliation,
     get_settings,
     require_role,
     verify_token,
)
from exceptions import InvoiceNotPayable
from schemas.mpesa import (
     AllocateRequest,
     AllocationResponse,
     CallbackAck,
     MpesaStatisticsResponse,
     PaybillInstructions,
     RegisterUrlsResponse,
     StkPushCreate,
     StkPushResponse,
     StkStatusResponse,
     TransactionListResponse,
     TransactionResponse,
)
from services.invoice_service import InvoiceService
from services.mpesa_gateway import MpesaGateway, parse_c2b_payload, parse_stk_callback
from services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mpesa", tags=["mpesa"])

ACCEPTED = CallbackAck()


# ---------------------------------------------------------------------------
# Safaricom callbacks (public)
# ---------------------------------------------------------------------------

@router.post("/stk-callback", response_model=CallbackAck, summary="STK push result from Safaricom")
def stk_callback(
     payload: dict = Body(...),
     db: Session = Depends(get_session),
     reconciliation: ReconciliationService = Depends(get_reconciliation),
):
     try:
          result = parse_stk_callback(payload)
     except (ValueError, TypeError, AttributeError) as e:
          logger.warning("Ignoring malformed STK callback: %s", e)
          return ACCEPTED

     try:
          reconciliation.handle_stk_callback(db, result)
     except Exception:
          # Safaricom is always acknowledged
          db.rollback()
          logger.exception("STK callback %s could not be processed", result.checkout_request_id)
     return ACCEPTED


@router.post("/c2b-validation", response_model=CallbackAck, summary="C2B validation from Safaricom")
def c2b_validation(payload: dict = Body(...)):
     logger.info("C2B validation for %s, ref %s", payload.get("TransID"), payload.get("BillRefNumber"))
     return ACCEPTED


@router.post("/c2b-confirmation", response_model=CallbackAck, summary="C2B confirmation from Safaricom")
def c2b_confirmation(
     payload: dict = Body(...),
     db: Session = Depends(get_session),
     reconciliation: ReconciliationService = Depends(get_reconciliation),
):
     try:
          record = parse_c2b_payload(payload)
     except (ValueError, ArithmeticError, TypeError) as e:
          logger.warning("Invalid C2B payload: %s", e)
          return ACCEPTED

     try:
          result = reconciliation.process_transaction(db, record)
          logger.info("C2B %s processed: %s", record.trans_id, result.status.value)
     except Exception:
          db.rollback()
          logger.exception("C2B confirmation %s could not be processed", record.trans_id)
     return ACCEPTED


# ---------------------------------------------------------------------------
# Staff endpoints
# ---------------------------------------------------------------------------

@router.post("/stk-push", response_model=StkPushResponse, summary="Send an STK push for an invoice")
def initiate_stk_push(
     body: StkPushCreate,
     request: Request,
     db: Session = Depends(get_session),
     token: dict = Depends(require_role("admin", "accountant", "cashier")),
):
     invoice = InvoiceService.get_by_number(db, body.invoice_number)
     if not invoice.is_payable:
          raise InvoiceNotPayable(f"Invoice {invoice.invoice_number} has no payable balance")
     amount = body.amount or invoice.balance_amount

     handle = request.app.state.push_initiator(body.phone_number, amount, invoice.invoice_number)
     return StkPushResponse(
          checkout_request_id=handle.checkout_request_id,
          merchant_request_id=handle.merchant_request_id,
          customer_message=handle.customer_message,
     )


@router.get(
     "/stk-status/{checkout_request_id}",
     response_model=StkStatusResponse,
     summary="Query the provider for an STK push result",
)
def stk_status(
     checkout_request_id: str,
     db: Session = Depends(get_session),
     gateway: MpesaGateway = Depends(get_gateway),
     reconciliation: ReconciliationService = Depends(get_reconciliation),
     token: dict = Depends(verify_token),
):
     push_status = gateway.query_push_status(checkout_request_id)
     reconciliation.apply_push_status(db, push_status)
     return StkStatusResponse(
          checkout_request_id=push_status.checkout_request_id,
          state=push_status.state,
          result_code=push_status.result_code,
          result_desc=push_status.result_desc,
     )


@router.get("/transactions", response_model=TransactionListResponse, summary="List M-PESA transactions")
def list_transactions(
     allocated: Optional[bool] = Query(None, description="Filter by allocation state"),
     start_date: Optional[date] = Query(None),
     end_date: Optional[date] = Query(None),
     page: int = Query(1, ge=1),
     page_size: int = Query(20, ge=1, le=100),
     db: Session = Depends(get_session),
     reconciliation: ReconciliationService = Depends(get_reconciliation),
     token: dict = Depends(verify_token),
):
     items, total = reconciliation.list_transactions(
          db, allocated=allocated, start_date=start_date, end_date=end_date, page=page, page_size=page_size
     )
     return TransactionListResponse(
          transactions=[TransactionResponse.model_validate(t) for t in items],
          total=total,
          page=page,
          page_size=page_size,
     )


@router.get(
     "/transactions/unallocated",
     response_model=TransactionListResponse,
     summary="Transactions waiting for manual allocation",
)
def list_unallocated(
     page: int = Query(1, ge=1),
     page_size: int = Query(20, ge=1, le=100),
     db: Session = Depends(get_session),
     reconciliation: ReconciliationService = Depends(get_reconciliation),
     token: dict = Depends(verify_token),
):
     items, total = reconciliation.list_unallocated(db, page=page, page_size=page_size)
     return TransactionListResponse(
          transactions=[TransactionResponse.model_validate(t) for t in items],
          total=total,
          page=page,
          page_size=page_size,
     )


@router.post(
     "/transactions/{transaction_id}/allocate",
     response_model=AllocationResponse,
     summary="Manually allocate a transaction to an invoice",
)
def allocate_transaction(
     transaction_id: int,
     body: AllocateRequest,
     db: Session = Depends(get_session),
     reconciliation: ReconciliationService = Depends(get_reconciliation),
     token: dict = Depends(require_role("admin", "accountant")),
):
     result = reconciliation.manual_allocate(db, transaction_id, body.invoice_id, current_user_id(token))
     return AllocationResponse.from_result(result)


@router.get("/statistics", response_model=MpesaStatisticsResponse, summary="M-PESA collection statistics")
def statistics(
     start_date: Optional[date] = Query(None, description="Defaults to 30 days before end_date"),
     end_date: Optional[date] = Query(None, description="Defaults to today"),
     db: Session = Depends(get_session),
     reconciliation: ReconciliationService = Depends(get_reconciliation),
     token: dict = Depends(verify_token),
):
     if start_date and end_date and start_date > end_date:
          raise HTTPException(
               status_code=status.HTTP_400_BAD_REQUEST,
               detail="start_date must not be after end_date"
          )
     return reconciliation.statistics(db, start_date, end_date)


@router.get(
     "/paybill/{invoice_number}",
     response_model=PaybillInstructions,
     summary="Paybill details for paying an invoice manually",
)
def paybill_instructions(
     invoice_number: str,
     db: Session = Depends(get_session),
     settings: Settings = Depends(get_settings),
     token: dict = Depends(verify_token),
):
     invoice = InvoiceService.get_by_number(db, invoice_number)
     return PaybillInstructions(
          business_short_code=settings.mpesa_shortcode,
          account_reference=invoice.invoice_number,
          amount=max(invoice.balance_amount, Decimal("0.00")),
     )


@router.post("/register-urls", response_model=RegisterUrlsResponse, summary="Register C2B URLs with Safaricom")
def register_urls(
     gateway: MpesaGateway = Depends(get_gateway),
     token: dict = Depends(require_role("admin")),
):
     return gateway.register_c2b_urls()
