# schemas/__init__.py
from .invoice import (
     InvoiceItemCreate,
     InvoiceCreate,
     InvoiceCancel,
     InvoiceResponse,
     InvoiceListResponse,
)
from .payment import PaymentCreate, PaymentResponse, PaymentListResponse
from .receipt import ReceiptResponse
from .audit import AuditLogResponse, AuditLogListResponse, UserActivityResponse

__all__ = [
     "InvoiceItemCreate",
     "InvoiceCreate",
     "InvoiceCancel",
     "InvoiceResponse",
     "InvoiceListResponse",
     "PaymentCreate",
     "PaymentResponse",
     "PaymentListResponse",
     "ReceiptResponse",
     "AuditLogResponse",
     "AuditLogListResponse",
     "UserActivityResponse",
]
