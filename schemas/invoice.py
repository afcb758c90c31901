# schemas/invoice.py
"""
Pydantic schemas for Invoice API request/response validation.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.invoice import InvoiceItemType, InvoiceStatus


class InvoiceItemCreate(BaseModel):
     item_type: InvoiceItemType = Field(default=InvoiceItemType.OTHER)
     item_ref: Optional[str] = Field(None, max_length=64, description="Catalog id of the drug, test or procedure")
     description: str = Field(..., min_length=1, max_length=255)
     quantity: int = Field(default=1, gt=0)
     unit_price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
     discount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)


class InvoiceCreate(BaseModel):
     """Schema for creating a new invoice."""
     patient_id: str = Field(..., min_length=1, max_length=64, description="Patient being billed")
     visit_id: Optional[str] = Field(None, max_length=64)
     items: List[InvoiceItemCreate] = Field(..., min_length=1)
     discount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)
     due_date: Optional[date] = None
     notes: Optional[str] = None
     draft: bool = Field(default=False, description="Create as draft (not payable until issued)")

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "patient_id": "PAT-000123",
                    "items": [
                         {"item_type": "consultation", "description": "General consultation", "unit_price": 1000.00},
                         {"item_type": "lab_test", "description": "Full blood count", "quantity": 1, "unit_price": 800.00},
                    ],
                    "due_date": "2026-11-30",
               }
          }
     )


class InvoiceCancel(BaseModel):
     reason: str = Field(..., min_length=1, max_length=500)


class InvoiceItemResponse(BaseModel):
     id: int
     item_type: InvoiceItemType
     item_ref: Optional[str] = None
     description: str
     quantity: int
     unit_price: Decimal
     discount: Decimal
     total_price: Decimal

     model_config = ConfigDict(from_attributes=True)


class InvoiceResponse(BaseModel):
     """Schema for invoice response."""
     id: int
     invoice_number: str
     patient_id: str
     visit_id: Optional[str] = None
     subtotal: Decimal
     tax: Decimal
     discount: Decimal
     total_amount: Decimal
     paid_amount: Decimal
     balance_amount: Decimal
     status: InvoiceStatus
     due_date: Optional[date] = None
     notes: Optional[str] = None
     created_by: str
     created_at: Optional[datetime] = None
     updated_at: Optional[datetime] = None
     items: List[InvoiceItemResponse] = []

     model_config = ConfigDict(
          from_attributes=True,
          json_schema_extra={
               "example": {
                    "id": 1,
                    "invoice_number": "INV-202610-0001",
                    "patient_id": "PAT-000123",
                    "subtotal": 1800.00,
                    "tax": 288.00,
                    "discount": 0.00,
                    "total_amount": 2088.00,
                    "paid_amount": 1000.00,
                    "balance_amount": 1088.00,
                    "status": "partial",
                    "due_date": "2026-11-30",
                    "created_by": "cashier-7",
               }
          }
     )


class InvoiceListResponse(BaseModel):
     """Schema for paginated invoice list response."""
     invoices: List[InvoiceResponse]
     total: int
     page: int = 1
     page_size: int = 50


class OverdueUpdateResponse(BaseModel):
     marked_overdue: int


class FinancialSummaryResponse(BaseModel):
     start_date: date
     end_date: date
     total_invoiced: Decimal
     total_collected: Decimal
     total_outstanding: Decimal
     payments_by_method: Dict[str, Decimal]
     invoice_count: int
     payment_count: int


class PatientBalanceResponse(BaseModel):
     patient_id: str
     total_owed: Decimal
     total_paid: Decimal
     overdue_amount: Decimal
     open_count: int
     overdue_count: int
     total_invoices: int


class LedgerVerifyResponse(BaseModel):
     """Result of recomputing ledger hashes."""
     valid: bool
     message: str
     entries_checked: Optional[int] = None
