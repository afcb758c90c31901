# schemas/session.py
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from services.payment_session import SessionMethod, SessionState
from schemas.mpesa import PaybillInstructions


class PaymentSessionCreate(BaseModel):
     invoice_number: str = Field(..., min_length=1, max_length=32)
     method: SessionMethod = SessionMethod.STK
     phone_number: Optional[str] = Field(None, max_length=20)
     amount: Optional[Decimal] = Field(
          None, gt=0, max_digits=12, decimal_places=2,
          description="Defaults to the invoice balance",
     )
     embedded: bool = Field(default=False, description="Close the session automatically on success")

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "invoice_number": "INV-202610-0001",
                    "method": "stk",
                    "phone_number": "0712345678",
               }
          }
     )


class PaymentSessionResponse(BaseModel):
     id: str
     invoice_reference: str
     amount: Decimal
     method: SessionMethod
     phone_number: Optional[str] = None
     state: SessionState
     countdown_seconds: int
     transaction_id: Optional[str] = None
     checkout_request_id: Optional[str] = None
     error: Optional[str] = None
     error_code: Optional[str] = None
     embedded: bool
     closed: bool
     created_at: datetime
     paybill: Optional[PaybillInstructions] = None

     model_config = ConfigDict(from_attributes=True)

     @classmethod
     def from_session(cls, session) -> "PaymentSessionResponse":
          response = cls.model_validate(session)
          if session.method == SessionMethod.MANUAL:
               response.paybill = PaybillInstructions(**session.paybill_instructions())
          return response
