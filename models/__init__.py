# models/__init__.py
from .base import Base
from .invoice import Invoice, InvoiceItem, InvoiceStatus, InvoiceItemType
from .payment import Payment, PaymentMethod, PaymentStatus
from .payment_ledger import PaymentLedger
from .audit_log import AuditLog
from .mpesa import (
     ProviderTransaction,
     StkPushRequest,
     ReviewReason,
     StkRequestStatus,
     TransactionSource,
)

__all__ = [
     "Base",
     "Invoice",
     "InvoiceItem",
     "InvoiceStatus",
     "InvoiceItemType",
     "Payment",
     "PaymentMethod",
     "PaymentStatus",
     "PaymentLedger",
     "AuditLog",
     "ProviderTransaction",
     "StkPushRequest",
     "ReviewReason",
     "StkRequestStatus",
     "TransactionSource",
]
