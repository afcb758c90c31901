# schemas/mpesa.py
"""
Pydantic schemas for the M-PESA API.

Safaricom callbacks are accepted as raw JSON and normalized by the gateway
parsers; the models here describe what staff endpoints take and return.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.mpesa import ReviewReason, TransactionSource


class CallbackAck(BaseModel):
     """Body Safaricom expects back from every callback."""
     ResultCode: int = 0
     ResultDesc: str = "Accepted"


class StkPushCreate(BaseModel):
     invoice_number: str = Field(..., min_length=1, max_length=32)
     phone_number: str = Field(..., min_length=9, max_length=20, description="e.g. 0712345678 or 254712345678")
     amount: Optional[Decimal] = Field(
          None, gt=0, max_digits=12, decimal_places=2,
          description="Defaults to the invoice balance",
     )

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "invoice_number": "INV-202610-0001",
                    "phone_number": "0712345678",
                    "amount": 1000,
               }
          }
     )


class StkPushResponse(BaseModel):
     checkout_request_id: str
     merchant_request_id: Optional[str] = None
     customer_message: Optional[str] = None


class StkStatusResponse(BaseModel):
     checkout_request_id: str
     state: str
     result_code: Optional[str] = None
     result_desc: Optional[str] = None


class TransactionResponse(BaseModel):
     id: int
     trans_id: str
     transaction_type: Optional[str] = None
     trans_time: Optional[str] = None
     amount: Decimal
     business_short_code: Optional[str] = None
     bill_ref_number: Optional[str] = None
     msisdn: Optional[str] = None
     payer_name: str = ""
     source: TransactionSource
     is_allocated: bool
     allocated_to_invoice_id: Optional[int] = None
     allocated_at: Optional[datetime] = None
     allocated_by: Optional[str] = None
     review_reason: Optional[ReviewReason] = None
     created_at: Optional[datetime] = None

     model_config = ConfigDict(from_attributes=True)


class TransactionListResponse(BaseModel):
     transactions: List[TransactionResponse]
     total: int
     page: int = 1
     page_size: int = 20


class AllocateRequest(BaseModel):
     invoice_id: int = Field(..., gt=0)


class AllocationResponse(BaseModel):
     status: str
     message: str = ""
     transaction: TransactionResponse
     invoice_number: Optional[str] = None
     invoice_balance: Optional[Decimal] = None
     payment_number: Optional[str] = None

     @classmethod
     def from_result(cls, result) -> "AllocationResponse":
          return cls(
               status=result.status.value,
               message=result.message or ("Transaction allocated successfully" if result.allocated else ""),
               transaction=TransactionResponse.model_validate(result.transaction),
               invoice_number=result.invoice.invoice_number if result.invoice is not None else None,
               invoice_balance=result.invoice.balance_amount if result.invoice is not None else None,
               payment_number=result.payment.payment_number if result.payment is not None else None,
          )


class MpesaStatisticsResponse(BaseModel):
     start_date: date
     end_date: date
     total_transactions: int
     total_amount: Decimal
     allocated_count: int
     allocated_amount: Decimal
     pending_count: int
     pending_amount: Decimal
     pending_by_reason: Dict[str, int]


class PaybillInstructions(BaseModel):
     business_short_code: str
     account_reference: str
     amount: Decimal


class RegisterUrlsResponse(BaseModel):
     success: bool
     response_description: Optional[str] = None
