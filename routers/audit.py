# routers/audit.py
"""
Audit log API (read-only).

Entries are written by the invoice, payment and M-PESA allocation services;
accounting staff can search them and see what one user has been doing.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from database import get_session
from dependencies import require_role
from schemas.audit import AuditLogListResponse, AuditLogResponse, UserActivityResponse
from services import audit_service

router = APIRouter(prefix="/api/audit-logs", tags=["audit"])


@router.get("", response_model=AuditLogListResponse, summary="Search the audit log")
def list_audit_logs(
     user_id: Optional[str] = Query(None),
     action: Optional[str] = Query(None, description="e.g. PAYMENT_RECEIVED, INVOICE_CANCELLED"),
     table_name: Optional[str] = Query(None),
     start_date: Optional[date] = Query(None),
     end_date: Optional[date] = Query(None),
     page: int = Query(1, ge=1),
     page_size: int = Query(50, ge=1, le=100),
     db: Session = Depends(get_session),
     token: dict = Depends(require_role("admin", "accountant")),
):
     items, total = audit_service.list_audit_logs(
          db,
          user_id=user_id,
          action=action,
          table_name=table_name,
          start_date=start_date,
          end_date=end_date,
          page=page,
          page_size=page_size,
     )
     return AuditLogListResponse(
          logs=[AuditLogResponse.model_validate(entry) for entry in items],
          total=total,
          page=page,
          page_size=page_size,
     )


@router.get("/users/{user_id}/activity", response_model=UserActivityResponse, summary="Recent activity of one user")
def user_activity(
     user_id: str,
     days: int = Query(30, ge=1, le=365),
     db: Session = Depends(get_session),
     token: dict = Depends(require_role("admin", "accountant")),
):
     activity = audit_service.user_activity(db, user_id, days=days)
     return UserActivityResponse(
          user_id=activity["user_id"],
          total_actions=activity["total_actions"],
          by_action=activity["by_action"],
          recent_activity=[AuditLogResponse.model_validate(entry) for entry in activity["recent_activity"]],
     )
