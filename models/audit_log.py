# models/audit_log.py
"""
AuditLog model - who changed billing records, and what changed.

Written in the same unit of work as the change it describes, so an audit
row exists exactly when the change was committed. Append-only.
"""
from sqlalchemy import JSON, Column, DateTime, Integer, String, func

from .base import Base


class AuditLog(Base):
     id = Column(Integer, primary_key=True, autoincrement=True)
     user_id = Column(String(64), nullable=False, index=True)  # staff id, or SYSTEM
     action = Column(String(64), nullable=False, index=True)
     table_name = Column(String(64), nullable=False, index=True)
     record_id = Column(String(64), nullable=True)
     old_data = Column(JSON, nullable=True)
     new_data = Column(JSON, nullable=True)
     created_at = Column(DateTime, server_default=func.now(), nullable=False, index=True)

     def __repr__(self):
          return f"<AuditLog(id={self.id}, action='{self.action}', {self.table_name}:{self.record_id}, user='{self.user_id}')>"
