# services/audit_service.py
"""
Audit trail for changes to billing records.

Entries are added to the caller's session and committed together with the
change they describe; nothing here commits.
"""
import enum
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import AuditLog, Invoice

INVOICE_CREATED = "INVOICE_CREATED"
INVOICE_CANCELLED = "INVOICE_CANCELLED"
PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
MPESA_ALLOCATED = "MPESA_MANUAL_ALLOCATION"


def _jsonable(value):
     if isinstance(value, Decimal):
          return str(value)
     if isinstance(value, enum.Enum):
          return value.value
     if isinstance(value, (date, datetime)):
          return value.isoformat()
     if isinstance(value, dict):
          return {k: _jsonable(v) for k, v in value.items()}
     if isinstance(value, (list, tuple)):
          return [_jsonable(v) for v in value]
     return value


def invoice_snapshot(invoice: Invoice) -> Dict[str, Any]:
     """The money and lifecycle fields of an invoice, as stored in audit data."""
     return _jsonable({
          "status": invoice.status,
          "total_amount": invoice.total_amount,
          "paid_amount": invoice.paid_amount,
          "balance_amount": invoice.balance_amount,
     })


def record(
     db: Session,
     user_id: str,
     action: str,
     table_name: str,
     record_id=None,
     old_data: Optional[Dict[str, Any]] = None,
     new_data: Optional[Dict[str, Any]] = None,
) -> AuditLog:
     entry = AuditLog(
          user_id=str(user_id),
          action=action,
          table_name=table_name,
          record_id=str(record_id) if record_id is not None else None,
          old_data=_jsonable(old_data) if old_data is not None else None,
          new_data=_jsonable(new_data) if new_data is not None else None,
     )
     db.add(entry)
     db.flush()
     return entry


def list_audit_logs(
     db: Session,
     user_id: Optional[str] = None,
     action: Optional[str] = None,
     table_name: Optional[str] = None,
     start_date: Optional[date] = None,
     end_date: Optional[date] = None,
     page: int = 1,
     page_size: int = 50,
) -> Tuple[List[AuditLog], int]:
     query = db.query(AuditLog)
     if user_id:
          query = query.filter(AuditLog.user_id == user_id)
     if action:
          query = query.filter(AuditLog.action == action)
     if table_name:
          query = query.filter(AuditLog.table_name == table_name)
     if start_date:
          query = query.filter(func.date(AuditLog.created_at) >= start_date)
     if end_date:
          query = query.filter(func.date(AuditLog.created_at) <= end_date)

     total = query.count()
     items = (
          query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
          .offset((page - 1) * page_size)
          .limit(page_size)
          .all()
     )
     return items, total


def user_activity(db: Session, user_id: str, days: int = 30) -> Dict[str, Any]:
     """Counts by action over the last ``days`` days, plus the ten latest entries."""
     since = datetime.utcnow() - timedelta(days=days)
     entries = (
          db.query(AuditLog)
          .filter(AuditLog.user_id == user_id, AuditLog.created_at >= since)
          .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
          .all()
     )
     by_action: Dict[str, int] = {}
     for entry in entries:
          by_action[entry.action] = by_action.get(entry.action, 0) + 1
     return {
          "user_id": user_id,
          "total_actions": len(entries),
          "by_action": by_action,
          "recent_activity": entries[:10],
     }
