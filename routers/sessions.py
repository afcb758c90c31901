# routers/sessions.py
"""
Payment session API: drives one payment attempt for an invoice at the
cashier desk or on the patient portal.

Sessions are in memory; clients poll GET /api/payment-sessions/{id} for the
state and countdown while the attempt is processing.
"""
from decimal import Decimal

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from database import get_session_context
from dependencies import get_registry, verify_token
from exceptions import InvalidPaymentAmount, InvoiceNotPayable
from schemas.mpesa import StkStatusResponse
from schemas.session import PaymentSessionCreate, PaymentSessionResponse
from services.invoice_service import InvoiceService
from services.payment_session import PaymentSession, SessionMethod, SessionRegistry

router = APIRouter(prefix="/api/payment-sessions", tags=["payment-sessions"])


def _payable_balance(session_factory: sessionmaker, invoice_number: str):
     with get_session_context(session_factory) as db:
          invoice = InvoiceService.get_by_number(db, invoice_number)
          if not invoice.is_payable:
               raise InvoiceNotPayable(f"Invoice {invoice.invoice_number} has no payable balance")
          return invoice.invoice_number, invoice.balance_amount


@router.post(
     "",
     response_model=PaymentSessionResponse,
     status_code=status.HTTP_201_CREATED,
     summary="Open a payment session for an invoice",
)
async def create_payment_session(
     body: PaymentSessionCreate,
     request: Request,
     registry: SessionRegistry = Depends(get_registry),
     token: dict = Depends(verify_token),
):
     state = request.app.state
     invoice_number, balance = await run_in_threadpool(_payable_balance, state.session_factory, body.invoice_number)
     amount = body.amount or balance
     if amount > balance:
          raise InvalidPaymentAmount(f"Amount {amount} exceeds the invoice balance {balance}")

     is_stk = body.method == SessionMethod.STK
     session = PaymentSession(
          invoice_reference=invoice_number,
          amount=Decimal(amount),
          method=body.method,
          notifier=state.notifier,
          push_initiator=state.push_initiator if is_stk else None,
          status_checker=state.gateway.query_push_status if is_stk else None,
          phone_number=body.phone_number,
          wait_seconds=state.settings.stk_wait_seconds if is_stk else state.settings.manual_wait_seconds,
          embedded=body.embedded,
          short_code=state.settings.mpesa_shortcode,
     )
     registry.add(session)
     return PaymentSessionResponse.from_session(session)


@router.get("/{session_id}", response_model=PaymentSessionResponse, summary="Session state and countdown")
async def get_payment_session(
     session_id: str,
     registry: SessionRegistry = Depends(get_registry),
     token: dict = Depends(verify_token),
):
     return PaymentSessionResponse.from_session(registry.get(session_id))


@router.post("/{session_id}/start", response_model=PaymentSessionResponse, summary="Send the push or start waiting")
async def start_payment_session(
     session_id: str,
     registry: SessionRegistry = Depends(get_registry),
     token: dict = Depends(verify_token),
):
     session = await registry.start(registry.get(session_id))
     return PaymentSessionResponse.from_session(session)


@router.post("/{session_id}/check", response_model=StkStatusResponse, summary="Ask M-PESA about the STK push")
async def check_payment_session(
     session_id: str,
     request: Request,
     registry: SessionRegistry = Depends(get_registry),
     token: dict = Depends(verify_token),
):
     session = registry.get(session_id)
     push_status = await session.check_status()
     if push_status.state == "failed":
          await run_in_threadpool(_record_push_failure, request.app.state, push_status)
     return StkStatusResponse(
          checkout_request_id=push_status.checkout_request_id,
          state=push_status.state,
          result_code=push_status.result_code,
          result_desc=push_status.result_desc,
     )


def _record_push_failure(state, push_status) -> None:
     with get_session_context(state.session_factory) as db:
          state.reconciliation.apply_push_status(db, push_status)


@router.post("/{session_id}/cancel", response_model=PaymentSessionResponse, summary="Cancel the attempt")
async def cancel_payment_session(
     session_id: str,
     registry: SessionRegistry = Depends(get_registry),
     token: dict = Depends(verify_token),
):
     session = registry.get(session_id)
     session.cancel()
     return PaymentSessionResponse.from_session(session)


@router.post("/{session_id}/reset", response_model=PaymentSessionResponse, summary="Retry after failure or timeout")
async def reset_payment_session(
     session_id: str,
     registry: SessionRegistry = Depends(get_registry),
     token: dict = Depends(verify_token),
):
     session = registry.get(session_id)
     session.reset()
     return PaymentSessionResponse.from_session(session)


@router.post("/{session_id}/close", response_model=PaymentSessionResponse, summary="Close the session")
async def close_payment_session(
     session_id: str,
     registry: SessionRegistry = Depends(get_registry),
     token: dict = Depends(verify_token),
):
     session = registry.get(session_id)
     session.close()
     return PaymentSessionResponse.from_session(session)
