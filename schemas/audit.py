# schemas/audit.py
"""Pydantic schemas for the audit log API."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class AuditLogResponse(BaseModel):
     id: int
     user_id: str
     action: str
     table_name: str
     record_id: Optional[str] = None
     old_data: Optional[Dict[str, Any]] = None
     new_data: Optional[Dict[str, Any]] = None
     created_at: Optional[datetime] = None

     model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
     logs: List[AuditLogResponse]
     total: int
     page: int = 1
     page_size: int = 50


class UserActivityResponse(BaseModel):
     user_id: str
     total_actions: int
     by_action: Dict[str, int]
     recent_activity: List[AuditLogResponse]

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "user_id": "acc-1",
                    "total_actions": 3,
                    "by_action": {"PAYMENT_RECEIVED": 2, "INVOICE_CANCELLED": 1},
                    "recent_activity": [],
               }
          }
     )
