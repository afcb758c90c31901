# services/__init__.py
from .invoice_service import InvoiceService
from .ledger_service import (
     compute_transaction_hash,
     append_payment_record,
     verify_ledger_entry,
     verify_full_chain,
     GENESIS_HASH,
)
from .mpesa_gateway import MpesaGateway
from .notifier import CompletionNotifier, CompletionSignal
from .reconciliation_service import AllocationResult, AllocationStatus, ReconciliationService
from .payment_session import PaymentSession, SessionMethod, SessionRegistry, SessionState
from .receipt_service import build_receipt

__all__ = [
     "InvoiceService",
     "compute_transaction_hash",
     "append_payment_record",
     "verify_ledger_entry",
     "verify_full_chain",
     "GENESIS_HASH",
     "MpesaGateway",
     "CompletionNotifier",
     "CompletionSignal",
     "AllocationResult",
     "AllocationStatus",
     "ReconciliationService",
     "PaymentSession",
     "SessionMethod",
     "SessionRegistry",
     "SessionState",
     "build_receipt",
]
