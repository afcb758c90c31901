from decimal import Decimal

import pytest

from exceptions import InvoiceNotPayable
from models import AuditLog
from models.payment import PaymentMethod
from services import audit_service
from services.invoice_service import InvoiceService


def _c2b(bill_ref):
     return {
          "TransID": "QKJ41HAY6Q",
          "TransAmount": "1000.00",
          "BillRefNumber": bill_ref,
          "MSISDN": "254712345678",
     }


def test_counter_payment_is_audited_with_balances(client, auth_headers, make_invoice, db):
     created = make_invoice("1000.00", invoice_number="INV-001")

     client.post(
          "/api/payments",
          json={"invoice_id": created.id, "amount": "400"},
          headers=auth_headers("cashier", "cashier-7"),
     )

     entry = db.query(AuditLog).filter(AuditLog.action == audit_service.PAYMENT_RECEIVED).one()
     assert entry.user_id == "cashier-7"
     assert entry.table_name == "payments"
     assert entry.old_data["balance_amount"] == "1000.00"
     assert entry.new_data["balance_amount"] == "600.00"
     assert entry.new_data["method"] == "cash"
     assert entry.new_data["invoice_number"] == "INV-001"


def test_cancel_is_audited_and_refused_cancel_is_not(db, make_invoice):
     created = make_invoice("1000.00")
     InvoiceService.cancel_invoice(db, created.id, "Duplicate bill", "acc-1")
     db.commit()

     entry = db.query(AuditLog).filter(AuditLog.action == audit_service.INVOICE_CANCELLED).one()
     assert entry.user_id == "acc-1"
     assert entry.record_id == str(created.id)
     assert entry.old_data["status"] == "pending"
     assert entry.new_data["status"] == "cancelled"
     assert entry.new_data["reason"] == "Duplicate bill"

     paid = make_invoice("500.00")
     InvoiceService.apply_payment(db, paid.id, Decimal("100"), PaymentMethod.CASH)
     db.commit()
     with pytest.raises(InvoiceNotPayable):
          InvoiceService.cancel_invoice(db, paid.id, "Too late", "acc-1")
     db.rollback()
     assert db.query(AuditLog).filter(AuditLog.action == audit_service.INVOICE_CANCELLED).count() == 1


def test_manual_allocation_is_audited_auto_allocation_is_not(db, reconciliation, make_invoice):
     created = make_invoice("1000.00", invoice_number="INV-001")
     held = reconciliation.process_c2b(db, _c2b("0712345678")).transaction

     reconciliation.manual_allocate(db, held.id, created.id, "acc-1")

     entry = db.query(AuditLog).filter(AuditLog.action == audit_service.MPESA_ALLOCATED).one()
     assert entry.user_id == "acc-1"
     assert entry.table_name == "mpesa_transactions"
     assert entry.old_data == {"is_allocated": False, "review_reason": "unmatched", "amount": "1000.00"}
     assert entry.new_data["invoice_number"] == "INV-001"

     other = make_invoice("1000.00", invoice_number="INV-002")
     reconciliation.process_c2b(db, {**_c2b(other.invoice_number), "TransID": "QKJ41HAY7R"})
     assert db.query(AuditLog).filter(AuditLog.action == audit_service.MPESA_ALLOCATED).count() == 1


def test_audit_log_api(client, auth_headers, make_invoice):
     created = make_invoice("1000.00")
     client.post("/api/payments", json={"invoice_id": created.id, "amount": "100"}, headers=auth_headers("cashier", "c-1"))
     client.post("/api/payments", json={"invoice_id": created.id, "amount": "200"}, headers=auth_headers("cashier", "c-1"))

     assert client.get("/api/audit-logs", headers=auth_headers("cashier")).status_code == 403

     body = client.get(
          "/api/audit-logs",
          params={"action": "PAYMENT_RECEIVED", "user_id": "c-1"},
          headers=auth_headers("accountant"),
     ).json()
     assert body["total"] == 2
     assert [Decimal(log["new_data"]["amount"]) for log in body["logs"]] == [Decimal("200"), Decimal("100")]

     activity = client.get("/api/audit-logs/users/c-1/activity", headers=auth_headers("admin")).json()
     assert activity["total_actions"] == 2
     assert activity["by_action"] == {"PAYMENT_RECEIVED": 2}
     assert len(activity["recent_activity"]) == 2
