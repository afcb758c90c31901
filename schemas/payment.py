# schemas/payment.py
"""
Pydantic schemas for counter payments and receipts.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.payment import PaymentMethod, PaymentStatus


class PaymentCreate(BaseModel):
     """Request body for POST /api/payments (cash, card, insurance... received at the counter)."""

     invoice_id: int = Field(..., gt=0, description="Invoice being paid")
     amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
     method: PaymentMethod = Field(default=PaymentMethod.CASH)
     reference: Optional[str] = Field(
          None,
          min_length=1,
          max_length=64,
          description="External reference (card slip, insurance claim, M-PESA code); must be unique",
     )
     payer_phone: Optional[str] = Field(None, max_length=20)
     notes: Optional[str] = None

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "invoice_id": 1,
                    "amount": 500.00,
                    "method": "cash",
               }
          }
     )


class PaymentResponse(BaseModel):
     id: int
     payment_number: str
     invoice_id: int
     amount: Decimal
     method: PaymentMethod
     status: PaymentStatus
     transaction_reference: str
     payer_phone: Optional[str] = None
     received_by: str
     received_at: datetime
     notes: Optional[str] = None
     transaction_hash: Optional[str] = Field(None, description="Ledger hash for client verification")

     model_config = ConfigDict(from_attributes=True)

     @classmethod
     def from_payment(cls, payment) -> "PaymentResponse":
          response = cls.model_validate(payment)
          if payment.ledger_entry is not None:
               response.transaction_hash = payment.ledger_entry.transaction_hash
          return response


class PaymentListResponse(BaseModel):
     payments: List[PaymentResponse]
     total: int
     page: int = 1
     page_size: int = 50
