# schemas/receipt.py
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel


class ReceiptItem(BaseModel):
     description: str
     quantity: int
     unit_price: Decimal
     total: Decimal


class ReceiptResponse(BaseModel):
     business_name: str
     receipt_number: str
     invoice_number: str
     patient_id: str
     date: datetime
     cashier: str
     items: List[ReceiptItem]
     subtotal: Decimal
     tax: Decimal
     discount: Decimal
     total: Decimal
     amount_paid: Decimal
     balance: Decimal
     payment_method: str
     transaction_id: Optional[str] = None
