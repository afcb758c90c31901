# services/reconciliation_service.py
"""
M-PESA reconciliation: turns provider transactions into invoice payments.

Every inbound transaction is stored first (keyed by its M-PESA TransID) and
only then allocated, so money is never lost when allocation fails. A
transaction is applied at most once:

- ``mpesa_transactions.trans_id`` is unique, so redelivery finds the stored row
- allocation claims the row with ``UPDATE ... WHERE is_allocated = false``
- ``payments.transaction_reference`` (the TransID) is unique

Transactions that cannot be applied automatically stay unallocated with a
``review_reason`` and show up in the unallocated queue for staff.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import false, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from exceptions import (
     AlreadySettled,
     InvalidPaymentAmount,
     InvoiceNotPayable,
     OverpaymentRejected,
     TransactionAlreadyAllocated,
     TransactionNotFound,
)
from models import Invoice, Payment, ProviderTransaction, StkPushRequest
from models.mpesa import ReviewReason, StkRequestStatus, TransactionSource
from models.payment import PaymentMethod
from services import audit_service
from services.invoice_service import InvoiceService
from services.mpesa_gateway import (
     ProviderTransactionRecord,
     PushHandle,
     PushStatus,
     StkCallbackResult,
     parse_c2b_payload,
)
from services.notifier import CompletionNotifier, CompletionSignal, checkout_key, invoice_key

logger = logging.getLogger(__name__)


class AllocationStatus(str, enum.Enum):
     ALLOCATED = "allocated"
     DUPLICATE = "duplicate"
     UNMATCHED = "unmatched"
     ALREADY_SETTLED = "already_settled"
     OVERPAYMENT = "overpayment"
     INVOICE_CLOSED = "invoice_closed"
     INVALID_AMOUNT = "invalid_amount"


_HOLD_REASONS = {
     AlreadySettled: ReviewReason.ALREADY_SETTLED,
     OverpaymentRejected: ReviewReason.OVERPAYMENT,
     InvoiceNotPayable: ReviewReason.INVOICE_CLOSED,
     InvalidPaymentAmount: ReviewReason.INVALID_AMOUNT,
}


@dataclass
class AllocationResult:
     status: AllocationStatus
     transaction: ProviderTransaction
     invoice: Optional[Invoice] = None
     payment: Optional[Payment] = None
     message: str = ""

     @property
     def allocated(self) -> bool:
          return self.status == AllocationStatus.ALLOCATED

     @property
     def settled(self) -> bool:
          """True when the money is on an invoice, by this delivery or an earlier one."""
          return self.allocated or (
               self.status == AllocationStatus.DUPLICATE and bool(self.transaction.is_allocated)
          )


class ReconciliationService:
     """Matches provider transactions to invoices and publishes the outcome."""

     def __init__(self, notifier: Optional[CompletionNotifier] = None):
          self.notifier = notifier or CompletionNotifier()

     # ------------------------------------------------------------------
     # Recording
     # ------------------------------------------------------------------

     def record_transaction(self, db: Session, record: ProviderTransactionRecord) -> Tuple[ProviderTransaction, bool]:
          """
          Store a provider transaction unless its TransID is already known.

          Commits on its own so the record survives whatever happens during
          allocation.

          Returns:
               (transaction, created)
          """
          existing = db.query(ProviderTransaction).filter(ProviderTransaction.trans_id == record.trans_id).first()
          if existing is not None:
               return existing, False

          transaction = ProviderTransaction(
               trans_id=record.trans_id,
               transaction_type=record.transaction_type,
               trans_time=record.trans_time,
               amount=record.amount,
               business_short_code=record.business_short_code,
               bill_ref_number=record.bill_ref_number,
               org_account_balance=record.org_account_balance,
               third_party_trans_id=record.third_party_trans_id,
               msisdn=record.msisdn,
               first_name=record.first_name,
               middle_name=record.middle_name,
               last_name=record.last_name,
               raw_payload=_jsonable(record.raw_payload),
               source=TransactionSource(record.source),
               is_allocated=False,
          )
          db.add(transaction)
          try:
               db.commit()
          except IntegrityError:
               # Concurrent delivery of the same TransID won the insert
               db.rollback()
               existing = db.query(ProviderTransaction).filter(ProviderTransaction.trans_id == record.trans_id).first()
               if existing is None:
                    raise
               return existing, False

          logger.info("Recorded M-PESA transaction %s (KES %s, ref %s)", record.trans_id, record.amount, record.bill_ref_number)
          return transaction, True

     def process_transaction(self, db: Session, record: ProviderTransactionRecord) -> AllocationResult:
          """Record and auto-allocate one provider transaction."""
          transaction, created = self.record_transaction(db, record)
          if not created and (transaction.is_allocated or transaction.review_reason is not None):
               logger.warning("Duplicate M-PESA transaction %s ignored", transaction.trans_id)
               return AllocationResult(
                    AllocationStatus.DUPLICATE,
                    transaction,
                    invoice=transaction.invoice,
                    message="Transaction already processed",
               )
          return self.allocate(db, transaction)

     def process_c2b(self, db: Session, payload: dict) -> AllocationResult:
          """Handle a C2B confirmation body."""
          return self.process_transaction(db, parse_c2b_payload(payload))

     # ------------------------------------------------------------------
     # Allocation
     # ------------------------------------------------------------------

     def allocate(self, db: Session, transaction: ProviderTransaction, allocated_by: str = "SYSTEM") -> AllocationResult:
          """
          Allocate a stored transaction to the invoice named by its BillRefNumber.

          Never raises for business-rule failures: an unmatched reference, a
          settled, overpaid or closed invoice, or a non-positive amount leaves
          the transaction in the review queue.
          """
          invoice = InvoiceService.find_by_number(db, transaction.bill_ref_number)
          if invoice is None:
               return self._hold(
                    db, transaction, ReviewReason.UNMATCHED, None,
                    f"No invoice found for account reference '{transaction.bill_ref_number}'",
               )
          return self._apply(db, transaction, invoice, allocated_by, manual=False)

     def manual_allocate(self, db: Session, transaction_id: int, invoice_id: int, user_id: str) -> AllocationResult:
          """
          Staff allocation of a queued transaction to a chosen invoice.

          Raises:
               TransactionNotFound, TransactionAlreadyAllocated, InvoiceNotFound,
               AlreadySettled, OverpaymentRejected, InvoiceNotPayable
          """
          transaction = db.query(ProviderTransaction).filter(ProviderTransaction.id == transaction_id).first()
          if transaction is None:
               raise TransactionNotFound(f"M-PESA transaction {transaction_id} not found")
          if transaction.is_allocated:
               raise TransactionAlreadyAllocated(f"Transaction {transaction.trans_id} is already allocated")

          invoice = InvoiceService.get_by_id(db, invoice_id)
          return self._apply(db, transaction, invoice, user_id, manual=True)

     def _claim(self, db: Session, transaction: ProviderTransaction, invoice: Invoice, allocated_by: str) -> bool:
          result = db.execute(
               update(ProviderTransaction)
               .where(ProviderTransaction.id == transaction.id, ProviderTransaction.is_allocated == false())
               .values(
                    is_allocated=True,
                    allocated_to_invoice_id=invoice.id,
                    allocated_at=datetime.utcnow(),
                    allocated_by=allocated_by,
                    review_reason=None,
               )
               .execution_options(synchronize_session=False)
          )
          return result.rowcount == 1

     def _apply(self, db: Session, transaction: ProviderTransaction, invoice: Invoice,
                allocated_by: str, manual: bool) -> AllocationResult:
          before = {
               "is_allocated": bool(transaction.is_allocated),
               "review_reason": transaction.review_reason,
               "amount": transaction.amount,
          }
          if not self._claim(db, transaction, invoice, allocated_by):
               db.rollback()
               db.refresh(transaction)
               if manual:
                    raise TransactionAlreadyAllocated(f"Transaction {transaction.trans_id} is already allocated")
               logger.warning("Transaction %s was allocated concurrently", transaction.trans_id)
               return AllocationResult(AllocationStatus.DUPLICATE, transaction, invoice=transaction.invoice,
                                       message="Transaction already processed")

          try:
               invoice, payment = InvoiceService.apply_payment(
                    db,
                    invoice.id,
                    transaction.amount,
                    PaymentMethod.MPESA,
                    reference=transaction.trans_id,
                    payer_phone=transaction.msisdn,
                    received_by=allocated_by,
                    notes=(
                         "Auto-allocated from M-PESA payment" if allocated_by == "SYSTEM"
                         else "Manually allocated M-PESA payment"
                    ),
               )
          except tuple(_HOLD_REASONS) as e:
               db.rollback()
               if manual:
                    raise
               return self._hold(db, transaction, _HOLD_REASONS[type(e)], invoice, e.message)
          except IntegrityError:
               # A payment already carries this TransID
               db.rollback()
               db.refresh(transaction)
               if manual:
                    raise TransactionAlreadyAllocated(f"Transaction {transaction.trans_id} has already been applied")
               logger.warning("Payment for %s already exists; treating as duplicate", transaction.trans_id)
               return AllocationResult(AllocationStatus.DUPLICATE, transaction, invoice=invoice,
                                       message="Transaction already processed")

          if manual:
               audit_service.record(
                    db, allocated_by, audit_service.MPESA_ALLOCATED, "mpesa_transactions", transaction.id,
                    old_data=before,
                    new_data={
                         "is_allocated": True,
                         "invoice_number": invoice.invoice_number,
                         "payment_id": payment.id,
                    },
               )
          db.commit()
          db.refresh(transaction)

          logger.info(
               "M-PESA %s allocated: KES %s to invoice %s by %s",
               transaction.trans_id, transaction.amount, invoice.invoice_number, allocated_by,
          )
          self.notifier.publish(CompletionSignal(
               key=invoice_key(invoice.invoice_number),
               succeeded=True,
               invoice_number=invoice.invoice_number,
               transaction_id=transaction.trans_id,
               amount=transaction.amount,
               message="Payment received",
          ))
          return AllocationResult(AllocationStatus.ALLOCATED, transaction, invoice=invoice, payment=payment)

     def _hold(self, db: Session, transaction: ProviderTransaction, reason: ReviewReason,
               invoice: Optional[Invoice], message: str) -> AllocationResult:
          transaction.review_reason = reason
          db.commit()
          logger.warning("M-PESA %s held for review (%s): %s", transaction.trans_id, reason.value, message)

          if invoice is not None:
               self.notifier.publish(CompletionSignal(
                    key=invoice_key(invoice.invoice_number),
                    succeeded=False,
                    invoice_number=invoice.invoice_number,
                    transaction_id=transaction.trans_id,
                    amount=transaction.amount,
                    message=f"Payment held for review: {message}",
               ))
          return AllocationResult(AllocationStatus(reason.value), transaction, invoice=invoice, message=message)

     # ------------------------------------------------------------------
     # STK push
     # ------------------------------------------------------------------

     def register_push(self, db: Session, handle: PushHandle) -> StkPushRequest:
          """Remember an accepted STK push so its callback can be tied to the invoice."""
          request = StkPushRequest(
               checkout_request_id=handle.checkout_request_id,
               merchant_request_id=handle.merchant_request_id,
               phone_number=handle.phone_number,
               amount=handle.amount,
               account_reference=handle.account_reference,
               status=StkRequestStatus.PENDING,
          )
          db.add(request)
          db.commit()
          return request

     def handle_stk_callback(self, db: Session, result: StkCallbackResult) -> Optional[AllocationResult]:
          """
          Apply an STK push result.

          A failed push (cancelled, wrong PIN, timeout on the phone) only
          updates the request and notifies the waiting session. A successful
          push is reconciled like any other provider transaction, with the
          M-PESA receipt number as TransID.
          """
          request = (
               db.query(StkPushRequest)
               .filter(StkPushRequest.checkout_request_id == result.checkout_request_id)
               .first()
          )
          if request is None:
               logger.warning("STK callback for unknown checkout %s", result.checkout_request_id)
          elif request.status == StkRequestStatus.PENDING:
               request.status = StkRequestStatus.COMPLETED if result.succeeded else StkRequestStatus.FAILED
               request.result_code = result.result_code
               request.result_desc = result.result_desc
               request.mpesa_receipt_number = result.mpesa_receipt_number
               db.commit()

          key = checkout_key(result.checkout_request_id)
          account_reference = request.account_reference if request is not None else None

          if not result.succeeded:
               logger.info("STK push %s failed: %s (%s)", result.checkout_request_id, result.result_desc, result.result_code)
               self.notifier.publish(CompletionSignal(
                    key=key,
                    succeeded=False,
                    invoice_number=account_reference,
                    message=result.result_desc or "Payment was not completed",
               ))
               return None

          amount = result.amount
          if amount is None and request is not None:
               amount = request.amount
          record = ProviderTransactionRecord(
               trans_id=result.mpesa_receipt_number or result.checkout_request_id,
               amount=amount if amount is not None else Decimal("0.00"),
               bill_ref_number=account_reference,
               msisdn=result.phone_number,
               transaction_type="CustomerPayBillOnline",
               trans_time=result.transaction_date,
               source=TransactionSource.STK.value,
               raw_payload=result.raw_payload,
          )
          allocation = self.process_transaction(db, record)

          self.notifier.publish(CompletionSignal(
               key=key,
               succeeded=allocation.settled,
               invoice_number=account_reference,
               transaction_id=record.trans_id,
               amount=record.amount,
               message="Payment received" if allocation.settled else f"Payment held for review: {allocation.message}",
          ))
          return allocation

     def apply_push_status(self, db: Session, status: PushStatus) -> None:
          """
          Act on a status query answer.

          Only a final failure is applied (as if its callback had arrived);
          a success still waits for the callback that carries the receipt.
          """
          if status.state != "failed":
               return
          self.handle_stk_callback(db, StkCallbackResult(
               merchant_request_id=None,
               checkout_request_id=status.checkout_request_id,
               result_code=int(status.result_code) if status.result_code and status.result_code.isdigit() else 1,
               result_desc=status.result_desc,
          ))

     # ------------------------------------------------------------------
     # Queries
     # ------------------------------------------------------------------

     def get_transaction(self, db: Session, transaction_id: int) -> ProviderTransaction:
          transaction = db.query(ProviderTransaction).filter(ProviderTransaction.id == transaction_id).first()
          if transaction is None:
               raise TransactionNotFound(f"M-PESA transaction {transaction_id} not found")
          return transaction

     @staticmethod
     def _filtered(db: Session, allocated: Optional[bool], start_date: Optional[date], end_date: Optional[date]):
          query = db.query(ProviderTransaction)
          if allocated is not None:
               query = query.filter(ProviderTransaction.is_allocated == allocated)
          if start_date:
               query = query.filter(func.date(ProviderTransaction.created_at) >= start_date)
          if end_date:
               query = query.filter(func.date(ProviderTransaction.created_at) <= end_date)
          return query

     def list_transactions(
          self,
          db: Session,
          allocated: Optional[bool] = None,
          start_date: Optional[date] = None,
          end_date: Optional[date] = None,
          page: int = 1,
          page_size: int = 20,
     ) -> Tuple[List[ProviderTransaction], int]:
          query = self._filtered(db, allocated, start_date, end_date)
          total = query.count()
          items = (
               query.order_by(ProviderTransaction.created_at.desc(), ProviderTransaction.id.desc())
               .offset((page - 1) * page_size)
               .limit(page_size)
               .all()
          )
          return items, total

     def list_unallocated(self, db: Session, page: int = 1, page_size: int = 20) -> Tuple[List[ProviderTransaction], int]:
          return self.list_transactions(db, allocated=False, page=page, page_size=page_size)

     def statistics(self, db: Session, start_date: Optional[date] = None, end_date: Optional[date] = None) -> dict:
          """Transaction counts and amounts for a period (last 30 days by default)."""
          end_date = end_date or date.today()
          start_date = start_date or end_date - timedelta(days=30)
          transactions = self._filtered(db, None, start_date, end_date).all()

          allocated = [t for t in transactions if t.is_allocated]
          pending = [t for t in transactions if not t.is_allocated]
          by_reason = {}
          for t in pending:
               reason = t.review_reason.value if t.review_reason else "unprocessed"
               by_reason[reason] = by_reason.get(reason, 0) + 1

          return {
               "start_date": start_date,
               "end_date": end_date,
               "total_transactions": len(transactions),
               "total_amount": sum((t.amount for t in transactions), Decimal("0.00")),
               "allocated_count": len(allocated),
               "allocated_amount": sum((t.amount for t in allocated), Decimal("0.00")),
               "pending_count": len(pending),
               "pending_amount": sum((t.amount for t in pending), Decimal("0.00")),
               "pending_by_reason": by_reason,
          }


def _jsonable(payload: dict) -> dict:
     """Raw provider payloads go to a JSON column; Decimals become strings."""
     def convert(value):
          if isinstance(value, Decimal):
               return str(value)
          if isinstance(value, dict):
               return {k: convert(v) for k, v in value.items()}
          if isinstance(value, list):
               return [convert(v) for v in value]
          return value
     return convert(payload or {})
